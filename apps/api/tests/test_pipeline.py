from __future__ import annotations

import asyncio
import io
import json
import zipfile
from uuid import uuid4
from typing import Optional

import httpx
import pytest

from coursepack.assembler import PackageAssembler, ZipPackageAssembler
from coursepack.cancellation import CancellationToken
from coursepack.errors import ConversionFailure, PackageGenerationError
from coursepack.loader import BlobMap
from coursepack.pipeline import MediaPipeline, RunRegistry, generate_package
from coursepack.reconcile import estimate_counts
from coursepack.schemas import (
    FailureReason,
    MediaMetadata,
    MediaType,
    RunStatus,
    StoredMedia,
    StoredMediaItem,
)
from coursepack.storage import atomic_write_json, ensure_project_dirs
from coursepack.store import MemoryMediaStore, ProjectMediaStore
from coursepack.walker import coerce_course

COURSE = {
    "welcome": {"title": "Welcome", "audioId": "audio-0"},
    "topics": [{"title": "Basics"}, {"title": "Advanced"}],
}


def _add(store: MemoryMediaStore, media_id: str, media_type: MediaType, page_id: str, data: Optional[bytes], **metadata: object) -> None:
    store.add(
        StoredMediaItem(id=media_id, type=media_type, page_id=page_id, metadata=MediaMetadata(**metadata)),
        data,
    )


def _scenario_store() -> MemoryMediaStore:
    store = MemoryMediaStore()
    _add(store, "image-0", MediaType.image, "topic-0", b"png", mime_type="image/png")
    _add(store, "caption-0", MediaType.caption, "topic-0", b"WEBVTT", mime_type="text/vtt")
    _add(store, "video-0", MediaType.video, "topic-1", b"mp4", mime_type="video/mp4")
    _add(store, "audio-1", MediaType.audio, "topic-1", b"mp3", mime_type="audio/mpeg")
    _add(store, "youtube-0", MediaType.youtube, "topic-0", None, youtube_url="https://www.youtube.com/watch?v=abc")
    _add(store, "youtube-1", MediaType.youtube, "topic-1", None, embed_url="https://www.youtube.com/embed/def")
    _add(store, "youtube-2", MediaType.youtube, "topic-1", None, is_youtube=True)
    return store


async def _run(store: MemoryMediaStore, course: object = COURSE, client: Optional[httpx.AsyncClient] = None):
    pipeline = MediaPipeline(store, client, entry_timeout=5)
    return await pipeline.run(course, CancellationToken())


class RecordingAssembler(PackageAssembler):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.seen: list[str] = []

    async def assemble(self, course, blobs, project_id, progress, settings=None) -> bytes:
        if self.fail:
            raise RuntimeError("disk full")
        self.seen = list(blobs)
        return b"package"


def test_end_to_end_counts_and_injection() -> None:
    store = _scenario_store()
    result = asyncio.run(_run(store))

    assert result.status == RunStatus.succeeded
    counts = result.counts
    assert (counts.total_media_count, counts.binary_files, counts.embedded_references) == (7, 4, 3)
    assert counts.binary_files + counts.embedded_references == counts.total_media_count
    assert counts.describe() == "7 media files (4 binary files, 3 embedded references)"

    basics, advanced = result.course.topics
    assert [r.id for r in basics.media] == ["image-0", "youtube-0"]
    assert basics.caption is not None and basics.caption.id == "caption-0"
    assert advanced.audio is not None and advanced.audio.id == "audio-1"
    assert [r.url for r in advanced.media if r.type == MediaType.youtube] == [
        "https://www.youtube.com/embed/def",
        "https://www.youtube.com/embed/2",
    ]
    assert basics.media[1].url == "https://www.youtube.com/embed/abc"
    assert basics.attached == {"image-0:image": "image-0.png", "caption-0:caption": "caption-0.vtt"}
    assert list(result.blobs) == ["audio-1.mp3", "caption-0.vtt", "image-0.png", "video-0.mp4"]

    assert [(f.id, f.reason) for f in result.failures] == [("audio-0", FailureReason.not_found)]
    assert result.warning == "Package generated with 1 missing media files"
    assert result.injected == 7


def test_estimate_matches_completion_counts() -> None:
    store = _scenario_store()
    items = asyncio.run(store.list_all_media())
    estimate = estimate_counts(coerce_course(COURSE), items)
    result = asyncio.run(_run(store))
    assert estimate == result.counts


def test_remote_url_materialized_once_across_runs() -> None:
    calls: list[str] = []

    def handle(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, content=b"GIF89a", headers={"Content-Type": "image/gif"})

    course = {"topics": [{"media": [{"type": "image", "url": "https://cdn.example.com/chart.gif"}]}]}
    store = MemoryMediaStore()

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handle)) as client:
            first = await _run(store, course, client)
            second = await _run(store, course, client)
        return first, second

    first, second = asyncio.run(scenario())
    assert calls == ["https://cdn.example.com/chart.gif"]
    assert len(asyncio.run(store.list_all_media())) == 1
    for result in (first, second):
        assert result.course.topics[0].media[0].id == "image-0"
        assert list(result.blobs) == ["image-0.gif"]
        assert result.counts.total_media_count == 1
        assert result.injected == 0


class GatedStore(MemoryMediaStore):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def get_media(self, media_id: str) -> Optional[StoredMedia]:
        if media_id == "video-0":
            await self.gate.wait()
        return await super().get_media(media_id)


def test_cancel_during_load_returns_partial_result() -> None:
    async def scenario():
        store = GatedStore()
        _add(store, "image-0", MediaType.image, "topic-0", b"png", mime_type="image/png")
        _add(store, "video-0", MediaType.video, "topic-1", b"mp4", mime_type="video/mp4")
        token = CancellationToken()
        blobs = BlobMap()
        task = asyncio.create_task(MediaPipeline(store, entry_timeout=10).run(COURSE, token, blobs=blobs))
        while "image-0.png" not in blobs:
            await asyncio.sleep(0.01)
        token.cancel("cancelled by user")
        return await task

    result = asyncio.run(scenario())
    assert result.status == RunStatus.cancelled
    assert result.cancelled
    assert list(result.blobs) == ["image-0.png"]
    assert all(f.reason != FailureReason.cancelled for f in result.failures)


def test_cancelled_before_start() -> None:
    async def scenario():
        token = CancellationToken()
        token.cancel()
        return await MediaPipeline(_scenario_store()).run(COURSE, token)

    result = asyncio.run(scenario())
    assert result.status == RunStatus.cancelled
    assert len(result.blobs) == 0


def test_generate_package_writes_zip() -> None:
    async def scenario():
        return await generate_package(
            COURSE,
            store=_scenario_store(),
            assembler=ZipPackageAssembler(),
            project_id="course-1",
            token=CancellationToken(),
        )

    outcome = asyncio.run(scenario())
    assert outcome.status == RunStatus.succeeded
    assert outcome.report.warning == "Package generated with 1 missing media files"
    assert outcome.package
    with zipfile.ZipFile(io.BytesIO(outcome.package)) as zf:
        names = set(zf.namelist())
        manifest = json.loads(zf.read("manifest.json"))
        assert zf.read("media/image-0.png") == b"png"
    assert names == {
        "manifest.json",
        "media/audio-1.mp3",
        "media/caption-0.vtt",
        "media/image-0.png",
        "media/video-0.mp4",
    }
    assert manifest["identifier"] == "course-1"
    assert len(manifest["course"]["topics"][0]["media"]) == 2


def test_generate_package_progress_reports_final_count() -> None:
    messages: list[str] = []

    async def scenario():
        store = MemoryMediaStore()
        _add(store, "image-0", MediaType.image, "topic-0", b"png", mime_type="image/png")
        _add(store, "youtube-0", MediaType.youtube, "topic-0", None)
        return await generate_package(
            {"topics": [{"title": "Only"}]},
            store=store,
            assembler=RecordingAssembler(),
            project_id="course-2",
            token=CancellationToken(),
            progress=lambda message, percent: messages.append(message),
        )

    outcome = asyncio.run(scenario())
    assert outcome.package == b"package"
    assert outcome.report.warning is None
    assert messages[0] == "Loading media files..."
    assert messages[-1] == "Package ready: 2 media files (1 binary files, 1 embedded references)"


def test_assembler_failure_is_fatal() -> None:
    async def scenario():
        await generate_package(
            COURSE,
            store=_scenario_store(),
            assembler=RecordingAssembler(fail=True),
            project_id="course-3",
            token=CancellationToken(),
        )

    with pytest.raises(PackageGenerationError):
        asyncio.run(scenario())


def test_unconvertible_course_is_fatal() -> None:
    async def scenario():
        await generate_package(
            {"topics": [{"media": [{"type": "hologram"}]}]},
            store=MemoryMediaStore(),
            assembler=RecordingAssembler(),
            project_id="course-4",
            token=CancellationToken(),
        )

    with pytest.raises(ConversionFailure):
        asyncio.run(scenario())


def test_zip_assembler_rejects_embedded_media_without_url() -> None:
    course = coerce_course({"topics": [{"media": [{"id": "youtube-0", "type": "youtube"}]}]})

    async def scenario():
        await ZipPackageAssembler().assemble(course, BlobMap(), "course-5", lambda m, p: None)

    with pytest.raises(PackageGenerationError):
        asyncio.run(scenario())


def test_new_run_supersedes_previous_one() -> None:
    async def scenario():
        registry = RunRegistry()
        seen: list[CancellationToken] = []

        async def run(token, blobs):
            seen.append(token)
            await token.wait()
            return token.reason

        first = await registry.start("p1", run)
        await asyncio.sleep(0)
        await registry.start("p1", run)
        await asyncio.sleep(0)
        cancelled = await registry.cancel("p1")
        return await first, cancelled, seen

    first_reason, cancelled, seen = asyncio.run(scenario())
    assert first_reason == "superseded by a new run"
    assert cancelled
    assert len(seen) == 2
    assert all(token.cancelled for token in seen)


def test_overlapping_starts_leave_one_live_run() -> None:
    async def scenario():
        registry = RunRegistry()
        seen: list[CancellationToken] = []

        async def run(token, blobs):
            seen.append(token)
            await token.wait()

        await registry.start("p1", run)
        await asyncio.sleep(0)
        await asyncio.gather(registry.start("p1", run), registry.start("p1", run))
        await asyncio.sleep(0)
        live = [token for token in seen if not token.cancelled]
        await registry.cancel("p1")
        return seen, live

    seen, live = asyncio.run(scenario())
    assert len(seen) == 3
    assert len(live) == 1
    assert live[0] is seen[-1]


def test_unclassifiable_stored_entry_is_reported_not_fatal() -> None:
    project_id = f"test-pipeline-{uuid4().hex[:8]}"
    base = ensure_project_dirs(project_id)
    atomic_write_json(
        base / "media" / "index.json",
        {
            "items": [
                {"id": "image-0", "type": "image", "page_id": "topic-0", "metadata": {"mimeType": "image/png"}},
                {"id": "doc-0", "type": "document", "page_id": "topic-1"},
            ]
        },
    )
    (base / "media" / "image-0.bin").write_bytes(b"png")

    result = asyncio.run(_run(ProjectMediaStore(project_id)))

    assert result.status == RunStatus.succeeded
    assert [r.id for r in result.course.topics[0].media] == ["image-0"]
    assert any(note.startswith("doc-0: cannot classify") for note in result.diagnostics)
