from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from .cancellation import CancellationToken
from .config import settings
from .errors import FetchFailure, MediaTimeout
from .mime import extension_from_name, infer_type_from_url, is_youtube_url, mime_for_extension
from .schemas import FailedMedia, FailureReason, MediaMetadata, MediaReference
from .store import MediaStore
from .walker import WalkedReference

logger = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 500, 502, 503, 504}


class Materialized(BaseModel):
    walked: WalkedReference
    reference: MediaReference
    reused: bool = False


class MaterializeResult(BaseModel):
    rewritten: list[Materialized] = Field(default_factory=list)
    failures: list[FailedMedia] = Field(default_factory=list)


class RemoteMaterializer:
    """Pull external media into the store, at most once per URL."""

    def __init__(
        self,
        store: MediaStore,
        client: httpx.AsyncClient,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.timeout = settings.remote_fetch_timeout_seconds if timeout is None else timeout
        self.max_retries = settings.max_retries if max_retries is None else max_retries

    async def fetch(self, url: str, token: CancellationToken) -> tuple[bytes, Optional[str]]:
        headers = {"User-Agent": settings.user_agent}
        last_detail = "request_error"
        for attempt in range(self.max_retries + 1):
            try:
                async with token.child(timeout=self.timeout, name=f"fetch {url}") as fetch_token:
                    resp = await fetch_token.run(
                        self.client.get(url, headers=headers, follow_redirects=True)
                    )
            except httpx.RequestError as exc:
                last_detail = f"{type(exc).__name__}: {exc}"
                if attempt < self.max_retries:
                    await token.run(asyncio.sleep(settings.retry_backoff_seconds * 2**attempt))
                    continue
                raise FetchFailure(url, last_detail) from exc

            if resp.status_code < 400:
                if not resp.content:
                    raise FetchFailure(url, "empty response body")
                content_type = resp.headers.get("Content-Type")
                return resp.content, content_type.split(";", 1)[0].strip() if content_type else None

            last_detail = f"http_{resp.status_code}"
            if resp.status_code in _RETRY_STATUSES and attempt < self.max_retries:
                await token.run(asyncio.sleep(settings.retry_backoff_seconds * 2**attempt))
                continue
            break
        raise FetchFailure(url, last_detail)

    async def materialize_reference(
        self, walked: WalkedReference, token: CancellationToken
    ) -> Materialized:
        reference = walked.reference
        url = reference.url or ""
        existing = await token.run(self.store.find_by_original_url(url))
        if existing is not None:
            logger.info("Remote media already stored as %s: %s", existing.id, url)
            return Materialized(
                walked=walked,
                reference=reference.model_copy(update={"id": existing.id}),
                reused=True,
            )

        logger.info("Downloading remote media %s", url)
        data, content_type = await self.fetch(url, token)
        media_type = infer_type_from_url(url)
        original_name = urlparse(url).path.rsplit("/", 1)[-1] or None
        metadata = MediaMetadata(
            mime_type=content_type or mime_for_extension(extension_from_name(url)),
            original_url=url,
            original_name=original_name,
            source="remote",
            title=reference.title,
        )
        item = await token.run(self.store.store_media(data, walked.page_id, media_type, metadata))
        logger.info("Stored remote media %s as %s", url, item.id)
        return Materialized(
            walked=walked,
            reference=reference.model_copy(
                update={"id": item.id, "file_name_hint": reference.file_name_hint or original_name}
            ),
        )

    async def materialize(
        self, pending: list[WalkedReference], token: CancellationToken
    ) -> MaterializeResult:
        """Resolve each pending URL reference to a store id.

        Runs sequentially so a URL repeated within one run is fetched once.
        Fetch failures are collected; cancellation propagates.
        """
        result = MaterializeResult()
        for walked in pending:
            token.raise_if_cancelled()
            url = walked.reference.url or ""
            if is_youtube_url(url):
                continue
            try:
                result.rewritten.append(await self.materialize_reference(walked, token))
            except FetchFailure as exc:
                logger.warning("Could not materialize %s: %s", walked.source_locator, exc)
                result.failures.append(
                    FailedMedia(
                        source_locator=walked.source_locator,
                        type=walked.reference.type,
                        id=walked.reference.id or url,
                        reason=FailureReason.fetch_failure,
                        detail=exc.detail,
                    )
                )
            except MediaTimeout as exc:
                logger.warning("Timed out materializing %s: %s", walked.source_locator, exc)
                result.failures.append(
                    FailedMedia(
                        source_locator=walked.source_locator,
                        type=walked.reference.type,
                        id=walked.reference.id or url,
                        reason=FailureReason.timeout,
                        detail=str(exc),
                    )
                )
        return result
