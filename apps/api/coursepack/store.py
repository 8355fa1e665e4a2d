from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from .config import settings
from .errors import MediaNotFound
from .mime import youtube_video_id
from .schemas import MediaMetadata, MediaType, StoredMedia, StoredMediaItem
from .storage import atomic_write_bytes, atomic_write_json, project_dir, read_json, safe_filename

logger = logging.getLogger(__name__)

_ID_SUFFIX = re.compile(r"-(\d+)$")
_PROJECT_LOCKS: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


def next_media_id(existing_ids: Iterable[str], media_type: MediaType) -> str:
    highest = -1
    prefix = f"{media_type.value}-"
    for media_id in existing_ids:
        if not media_id.startswith(prefix):
            continue
        match = _ID_SUFFIX.search(media_id)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1}"


def _url_name(url: Optional[str]) -> tuple[str, str]:
    """Host and last path segment of ``url``, both possibly empty."""
    parsed = urlparse(url or "")
    return (parsed.hostname or "").lower(), PurePosixPath(parsed.path).name


def youtube_metadata(
    url: str,
    title: Optional[str] = None,
    clip_start: Optional[float] = None,
    clip_end: Optional[float] = None,
) -> MediaMetadata:
    video_id = youtube_video_id(url)
    embed_url = f"{settings.youtube_embed_base}{video_id}" if video_id else None
    return MediaMetadata(
        youtube_url=url,
        embed_url=embed_url,
        clip_start=clip_start,
        clip_end=clip_end,
        title=title,
        source="youtube",
        is_youtube=True,
        mime_type="application/json",
    )


class MediaStore:
    """Keyed media persistence consumed by the pipeline."""

    name: str = "base"

    async def get_media(self, media_id: str) -> Optional[StoredMedia]:
        raise NotImplementedError

    async def require_media(self, media_id: str) -> StoredMedia:
        stored = await self.get_media(media_id)
        if stored is None:
            raise MediaNotFound(media_id)
        return stored

    async def list_all_media(self) -> list[StoredMediaItem]:
        raise NotImplementedError

    def unclassified_entries(self) -> list[str]:
        """Notes for entries the last listing had to skip."""
        return []

    async def store_media(
        self,
        data: Optional[bytes],
        page_id: str,
        media_type: MediaType,
        metadata: MediaMetadata,
    ) -> StoredMediaItem:
        raise NotImplementedError

    async def find_by_original_url(self, url: str) -> Optional[StoredMediaItem]:
        """Stored item downloaded from ``url``.

        Falls back to a remote item with the same file name, but only when it
        was downloaded from the same host.
        """
        items = await self.list_all_media()
        for item in items:
            if item.metadata.original_url == url:
                return item
        host, name = _url_name(url)
        for item in items:
            if item.metadata.source != "remote" or not name or item.metadata.original_name != name:
                continue
            if host and _url_name(item.metadata.original_url)[0] == host:
                return item
        return None

    async def store_youtube(
        self,
        url: str,
        page_id: str,
        title: Optional[str] = None,
        clip_start: Optional[float] = None,
        clip_end: Optional[float] = None,
    ) -> StoredMediaItem:
        metadata = youtube_metadata(url, title, clip_start, clip_end)
        return await self.store_media(None, page_id, MediaType.youtube, metadata)


class MemoryMediaStore(MediaStore):
    name = "memory"

    def __init__(self) -> None:
        self._items: dict[str, StoredMediaItem] = {}
        self._data: dict[str, Optional[bytes]] = {}
        self._lock = asyncio.Lock()

    def add(self, item: StoredMediaItem, data: Optional[bytes] = None) -> StoredMediaItem:
        self._items[item.id] = item
        self._data[item.id] = data
        return item

    async def get_media(self, media_id: str) -> Optional[StoredMedia]:
        item = self._items.get(media_id)
        if item is None:
            return None
        return StoredMedia(item=item, data=self._data.get(media_id))

    async def list_all_media(self) -> list[StoredMediaItem]:
        return list(self._items.values())

    async def store_media(
        self,
        data: Optional[bytes],
        page_id: str,
        media_type: MediaType,
        metadata: MediaMetadata,
    ) -> StoredMediaItem:
        async with self._lock:
            if metadata.original_url:
                for item in self._items.values():
                    if item.metadata.original_url == metadata.original_url:
                        return item
            media_id = next_media_id(self._items, media_type)
            item = StoredMediaItem(id=media_id, type=media_type, page_id=page_id, metadata=metadata)
            return self.add(item, data)


class ProjectMediaStore(MediaStore):
    """File-backed store under ``<projects_dir>/<project_id>/media``.

    ``index.json`` entries that no longer validate (an unknown media type, a
    missing id) are left in the index untouched but are never listed; the
    last listing's notes are available from :meth:`unclassified_entries`.
    """

    name = "project"

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        self.media_dir = project_dir(project_id) / "media"
        self.index_path = self.media_dir / "index.json"
        self._lock = _PROJECT_LOCKS[project_id]
        self._unclassified: list[str] = []

    def _read_entries(self) -> list[Any]:
        data = read_json(self.index_path, default={"items": []}) or {}
        return list(data.get("items", []))

    def _parse_entries(self, entries: list[Any]) -> tuple[list[StoredMediaItem], list[str]]:
        items: list[StoredMediaItem] = []
        skipped: list[str] = []
        for entry in entries:
            try:
                items.append(StoredMediaItem.model_validate(entry))
            except ValidationError as exc:
                raw = entry if isinstance(entry, dict) else {}
                note = (
                    f"{raw.get('id') or '<no id>'}: cannot classify stored media "
                    f"of type {raw.get('type')!r} ({exc.error_count()} validation errors)"
                )
                logger.warning("Skipping media index entry in %s: %s", self.project_id, note)
                skipped.append(note)
        return items, skipped

    def _read_index(self) -> list[StoredMediaItem]:
        items, skipped = self._parse_entries(self._read_entries())
        self._unclassified = skipped
        return items

    def _write_entries(self, entries: list[Any]) -> None:
        atomic_write_json(self.index_path, {"items": entries})

    def _data_path(self, media_id: str) -> Path:
        return self.media_dir / f"{safe_filename(media_id)}.bin"

    def _read_data(self, media_id: str) -> Optional[bytes]:
        path = self._data_path(media_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def unclassified_entries(self) -> list[str]:
        return list(self._unclassified)

    async def get_media(self, media_id: str) -> Optional[StoredMedia]:
        items = await asyncio.to_thread(self._read_index)
        item = next((i for i in items if i.id == media_id), None)
        if item is None:
            return None
        data = await asyncio.to_thread(self._read_data, media_id)
        return StoredMedia(item=item, data=data)

    async def list_all_media(self) -> list[StoredMediaItem]:
        return await asyncio.to_thread(self._read_index)

    async def store_media(
        self,
        data: Optional[bytes],
        page_id: str,
        media_type: MediaType,
        metadata: MediaMetadata,
    ) -> StoredMediaItem:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_entries)
            items, _ = self._parse_entries(entries)
            if metadata.original_url:
                for item in items:
                    if item.metadata.original_url == metadata.original_url:
                        logger.debug("store_media reused %s for %s", item.id, metadata.original_url)
                        return item
            # unclassified entries still own their ids and data files
            taken = [str(entry.get("id")) for entry in entries if isinstance(entry, dict) and entry.get("id")]
            media_id = next_media_id(taken, media_type)
            item = StoredMediaItem(id=media_id, type=media_type, page_id=page_id, metadata=metadata)
            if data is not None:
                await asyncio.to_thread(atomic_write_bytes, self._data_path(media_id), data)
            entries.append(item.model_dump(mode="json"))
            await asyncio.to_thread(self._write_entries, entries)
            logger.info("Stored %s media %s for page %s", media_type.value, media_id, page_id)
            return item

    async def delete_all(self) -> int:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_entries)
            for entry in entries:
                media_id = entry.get("id") if isinstance(entry, dict) else None
                if not media_id:
                    continue
                try:
                    self._data_path(str(media_id)).unlink(missing_ok=True)
                except ValueError:
                    logger.warning("Not removing data for unsafe media id %r", media_id)
            await asyncio.to_thread(self._write_entries, [])
            return len(entries)
