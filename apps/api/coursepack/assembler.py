from __future__ import annotations

import asyncio
import io
import json
import logging
import zipfile
from typing import Callable, Optional

from .errors import PackageGenerationError
from .loader import BlobMap
from .schemas import CourseContent, MediaType, PackageSettings
from .storage import iso_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]


class PackageAssembler:
    """Turns an augmented course tree and its blobs into a package buffer."""

    name: str = "base"

    async def assemble(
        self,
        course: CourseContent,
        blobs: BlobMap,
        project_id: str,
        progress: ProgressCallback,
        settings: Optional[PackageSettings] = None,
    ) -> bytes:
        raise NotImplementedError


def _check_reference_urls(course: CourseContent) -> None:
    for node in course.nodes():
        for reference in node.media:
            if reference.type == MediaType.youtube and not (reference.url or reference.embed_url):
                raise PackageGenerationError(
                    f"{node.locator}: embedded media {reference.id or '<no id>'} has no URL"
                )


class ZipPackageAssembler(PackageAssembler):
    """Minimal zip layout: ``manifest.json`` plus ``media/<file>``."""

    name = "zip"

    def _build(
        self,
        course: CourseContent,
        blobs: BlobMap,
        project_id: str,
        progress: ProgressCallback,
        settings: PackageSettings,
    ) -> bytes:
        _check_reference_urls(course)
        buffer = io.BytesIO()
        media_files = blobs.items()
        manifest = {
            "identifier": project_id,
            "generated_at": iso_now(),
            "settings": settings.model_dump(),
            "course": course.model_dump(mode="json"),
            "media": [
                {"file": f"media/{name}", "mime_type": blob.mime_type, "size": len(blob.data)}
                for name, blob in media_files
            ],
        }
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("manifest.json", json.dumps(manifest, ensure_ascii=True, indent=2))
            total = len(media_files)
            for idx, (name, blob) in enumerate(media_files, start=1):
                zf.writestr(f"media/{name}", blob.data)
                progress(f"Packaging media {idx}/{total}", 70 + 25 * idx / total)
        return buffer.getvalue()

    async def assemble(
        self,
        course: CourseContent,
        blobs: BlobMap,
        project_id: str,
        progress: ProgressCallback,
        settings: Optional[PackageSettings] = None,
    ) -> bytes:
        progress("Generating package...", 70)
        data = await asyncio.to_thread(
            self._build, course, blobs, project_id, progress, settings or PackageSettings()
        )
        logger.info("Assembled package for %s (%d bytes, %d media files)", project_id, len(data), len(blobs))
        return data
