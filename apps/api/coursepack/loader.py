from __future__ import annotations

import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Iterable, Iterator, Optional

from .cancellation import CancellationToken
from .config import settings
from .errors import MediaNotFound, MediaTimeout, OperationCancelled
from .mime import resolve_extension
from .schemas import FailedMedia, FailureReason, LoadPlanEntry, MediaBlob
from .store import MediaStore

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class EntryState(str, Enum):
    planned = "planned"
    loading = "loading"
    loaded = "loaded"
    failed = "failed"
    cancelled = "cancelled"


class BlobMap:
    """Resolved file name -> payload, scoped to a single run.

    Keys whose preferred file names collide are told apart by a numeric
    suffix. The key that sorts first keeps the plain name and a suffixed name
    never takes another key's preferred name, so the outcome does not depend
    on which load finished first.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, MediaBlob] = {}
        self._names: dict[str, str] = {}
        self._owners: dict[str, str] = {}
        self._claims: dict[str, dict[str, MediaBlob]] = {}
        self._preferred: dict[str, str] = {}

    def put(self, composite_key: str, blob: MediaBlob) -> str:
        """Store ``blob`` under its file name, or a suffixed one; returns the name used."""
        previous = self._preferred.pop(composite_key, None)
        if previous is not None:
            self._claims[previous].pop(composite_key, None)
            self._release(composite_key)
            self._assign(previous)
        preferred = blob.file_name
        self._preferred[composite_key] = preferred
        self._claims.setdefault(preferred, {})[composite_key] = blob
        self._assign(preferred)
        return self._names[composite_key]

    def _release(self, composite_key: str) -> None:
        name = self._names.pop(composite_key, None)
        if name is not None:
            self._blobs.pop(name, None)
            self._owners.pop(name, None)

    def _assign(self, preferred: str) -> None:
        claims = self._claims.get(preferred)
        if not claims:
            self._claims.pop(preferred, None)
            return
        for key in claims:
            self._release(key)
        displaced = self._owners.get(preferred)
        if displaced is not None:
            self._release(displaced)

        stem, dot, ext = preferred.rpartition(".")
        if not dot:
            stem, ext = preferred, ""
        name, suffix = preferred, 1
        for key in sorted(claims):
            while name in self._blobs or (name != preferred and name in self._claims):
                suffix += 1
                name = f"{stem}-{suffix}.{ext}" if dot else f"{stem}-{suffix}"
            self._blobs[name] = claims[key].model_copy(update={"file_name": name})
            self._names[key] = name
            self._owners[name] = key

        if displaced is not None:
            self._assign(self._preferred[displaced])

    def get(self, file_name: str) -> Optional[MediaBlob]:
        return self._blobs.get(file_name)

    def name_for(self, composite_key: str) -> Optional[str]:
        return self._names.get(composite_key)

    def items(self) -> list[tuple[str, MediaBlob]]:
        return sorted(self._blobs.items())

    def clear(self) -> None:
        self._blobs.clear()
        self._names.clear()
        self._owners.clear()
        self._claims.clear()
        self._preferred.clear()

    def __contains__(self, file_name: object) -> bool:
        return file_name in self._blobs

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._blobs))

    def __len__(self) -> int:
        return len(self._blobs)


class LoadResult:
    def __init__(self, blobs: Optional[BlobMap] = None) -> None:
        self.blobs = blobs if blobs is not None else BlobMap()
        self.failures: list[FailedMedia] = []
        self.states: dict[str, EntryState] = {}
        self.reference_only: set[str] = set()
        self.cancelled = False

    def count(self, state: EntryState) -> int:
        return sum(1 for value in self.states.values() if value == state)


def blob_file_name(entry: LoadPlanEntry, ext: str, shared_ids: set[str]) -> str:
    if entry.id in shared_ids:
        return f"{entry.id}-{entry.type.value}.{ext}"
    return f"{entry.id}.{ext}"


class BatchLoader:
    """Resolve every plan entry against the store concurrently.

    One lookup per entry, no concurrency cap. Each lookup races the shared
    run token and its own entry timeout. Failures are recorded, never raised.
    """

    def __init__(self, store: MediaStore, *, entry_timeout: Optional[float] = None) -> None:
        self.store = store
        self.entry_timeout = (
            settings.media_entry_timeout_seconds if entry_timeout is None else entry_timeout
        )

    def _fail(
        self,
        result: LoadResult,
        entry: LoadPlanEntry,
        reason: FailureReason,
        detail: str = "",
    ) -> None:
        result.states[entry.composite_key] = EntryState.failed
        result.failures.append(
            FailedMedia(
                source_locator=entry.source_locator,
                type=entry.type,
                id=entry.id,
                reason=reason,
                detail=detail,
            )
        )
        logger.warning("Failed to load %s (%s): %s %s", entry.source_locator, entry.id, reason.value, detail)

    async def _load_entry(
        self,
        entry: LoadPlanEntry,
        token: CancellationToken,
        result: LoadResult,
        shared_ids: set[str],
    ) -> None:
        key = entry.composite_key
        if token.cancelled:
            result.states[key] = EntryState.cancelled
            return
        result.states[key] = EntryState.loading
        try:
            async with token.child(timeout=self.entry_timeout, name=key) as entry_token:
                stored = await entry_token.run(self.store.require_media(entry.id))
        except MediaNotFound:
            self._fail(result, entry, FailureReason.not_found)
            return
        except OperationCancelled:
            result.states[key] = EntryState.cancelled
            return
        except MediaTimeout:
            self._fail(result, entry, FailureReason.timeout, f"no response within {self.entry_timeout}s")
            return
        except Exception as exc:  # noqa: BLE001
            self._fail(result, entry, FailureReason.fetch_failure, f"{type(exc).__name__}: {exc}")
            return

        if stored.item.is_reference_only:
            result.reference_only.add(key)
            result.states[key] = EntryState.loaded
            logger.debug("Skipping binary load for reference-only media %s", entry.id)
            return
        if not stored.data:
            self._fail(result, entry, FailureReason.not_found, "no binary data")
            return

        mime_type = stored.item.metadata.mime_type
        ext = resolve_extension(mime_type, entry.id, entry.type, entry.file_name_hint)
        blob = MediaBlob(
            file_name=blob_file_name(entry, ext, shared_ids),
            data=stored.data,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
        )
        file_name = result.blobs.put(key, blob)
        result.states[key] = EntryState.loaded
        logger.debug("Loaded %s as %s (%d bytes)", key, file_name, len(blob.data))

    async def load(
        self,
        entries: Iterable[LoadPlanEntry],
        token: CancellationToken,
        blobs: Optional[BlobMap] = None,
    ) -> LoadResult:
        entries = list(entries)
        result = LoadResult(blobs)
        id_counts = Counter(entry.id for entry in entries)
        shared_ids = {media_id for media_id, count in id_counts.items() if count > 1}
        for entry in entries:
            result.states[entry.composite_key] = EntryState.planned
        await asyncio.gather(
            *(self._load_entry(entry, token, result, shared_ids) for entry in entries)
        )
        result.cancelled = token.cancelled
        logger.info(
            "Batch load finished: %d loaded, %d failed, %d cancelled",
            result.count(EntryState.loaded),
            result.count(EntryState.failed),
            result.count(EntryState.cancelled),
        )
        return result
