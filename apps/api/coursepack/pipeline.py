from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from .assembler import PackageAssembler, ProgressCallback
from .cancellation import CancellationToken
from .config import settings
from .errors import MediaPipelineError, OperationCancelled, PackageGenerationError
from .loader import BatchLoader, BlobMap
from .materializer import MaterializeResult, RemoteMaterializer
from .orphans import fill_reference_urls, inject_orphans
from .planner import build_load_plan
from .reconcile import missing_media_warning, reconcile_counts, total_media_count
from .schemas import (
    CourseContent,
    FailedMedia,
    MediaCounts,
    MediaReference,
    PackageReport,
    PackageSettings,
    RunStatus,
)
from .store import MediaStore
from .walker import WalkedReference, coerce_course, walk_content

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _no_progress(message: str, percent: float) -> None:
    return None


class PipelineResult:
    def __init__(
        self,
        course: CourseContent,
        blobs: BlobMap,
        counts: MediaCounts,
        status: RunStatus = RunStatus.succeeded,
    ) -> None:
        self.course = course
        self.blobs = blobs
        self.counts = counts
        self.status = status
        self.failures: list[FailedMedia] = []
        self.diagnostics: list[str] = []
        self.injected = 0

    @property
    def cancelled(self) -> bool:
        return self.status == RunStatus.cancelled

    @property
    def warning(self) -> Optional[str]:
        if not self.failures:
            return None
        return missing_media_warning(len(self.failures))


def _replace_reference(course: CourseContent, walked: WalkedReference, reference: MediaReference) -> None:
    for node in course.nodes():
        if node.locator != walked.node_locator:
            continue
        if walked.slot == "audio":
            node.audio = reference
        elif walked.slot == "caption":
            node.caption = reference
        elif walked.position is not None and walked.position < len(node.media):
            node.media[walked.position] = reference
        return


def attach_blobs(course: CourseContent, blobs: BlobMap) -> int:
    attached = 0
    for node in course.nodes():
        references = [node.audio, node.caption, *node.media]
        for reference in references:
            if reference is None or not reference.id:
                continue
            name = blobs.name_for(reference.composite_key)
            if name is not None:
                node.attached[reference.composite_key] = name
                attached += 1
    return attached


class MediaPipeline:
    """Walk, inject, plan, materialize, load, classify.

    Phases run strictly in that order; only the load phase fans out.
    """

    def __init__(
        self,
        store: MediaStore,
        client: Optional[httpx.AsyncClient] = None,
        *,
        entry_timeout: Optional[float] = None,
        fetch_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.loader = BatchLoader(store, entry_timeout=entry_timeout)
        self.fetch_timeout = fetch_timeout

    async def _yield(self, token: CancellationToken) -> None:
        await asyncio.sleep(settings.phase_yield_seconds)
        token.raise_if_cancelled()

    async def _materialize(
        self, pending: list[WalkedReference], token: CancellationToken
    ) -> MaterializeResult:
        if self.client is not None:
            materializer = RemoteMaterializer(self.store, self.client, timeout=self.fetch_timeout)
            return await materializer.materialize(pending, token)
        async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
            materializer = RemoteMaterializer(self.store, client, timeout=self.fetch_timeout)
            return await materializer.materialize(pending, token)

    async def run(
        self,
        course: Any,
        token: CancellationToken,
        progress: Optional[ProgressCallback] = None,
        blobs: Optional[BlobMap] = None,
    ) -> PipelineResult:
        """Resolve every media reference of ``course`` into a blob map.

        Raises ConversionFailure when the course cannot be ingested. A
        cancelled token yields a result with ``RunStatus.cancelled`` that
        keeps whatever had already loaded.
        """
        report = progress or _no_progress
        blobs = blobs if blobs is not None else BlobMap()
        blobs.clear()
        course = coerce_course(course)

        report("Loading media files...", 5)
        result = PipelineResult(course, blobs, reconcile_counts(0, 0))
        try:
            store_items = await token.run(self.store.list_all_media())
            walked = walk_content(course)
            total = total_media_count(len(walked), len(store_items))
            result.counts = reconcile_counts(total, 0)
            report(f"Found {len(walked)} media references and {len(store_items)} stored media", 10)
            await self._yield(token)

            injection = inject_orphans(course, store_items, self.store.unclassified_entries())
            result.course = injection.course
            result.injected = len(injection.injected)
            result.diagnostics.extend(injection.gaps)
            fill_reference_urls(result.course, store_items)
            report(f"Added {result.injected} media from the library", 15)
            await self._yield(token)

            plan = build_load_plan(walk_content(result.course), {item.id for item in store_items})
            report(f"Planned {len(plan)} media loads", 20)
            await self._yield(token)

            if plan.pending_remote:
                report(f"Downloading {len(plan.pending_remote)} remote media", 25)
                materialized = await self._materialize(plan.pending_remote, token)
                for item in materialized.rewritten:
                    _replace_reference(result.course, item.walked, item.reference)
                    plan.add(item.reference, item.walked.source_locator)
                result.failures.extend(materialized.failures)
                await self._yield(token)
            result.diagnostics.extend(plan.notes)

            report(f"Loading {len(plan)} media files...", 30)
            loaded = await self.loader.load(plan, token, blobs)
            result.failures.extend(loaded.failures)
            if loaded.cancelled:
                result.status = RunStatus.cancelled
                logger.info("Run cancelled during load with %d files resolved", len(blobs))
                return result

            attach_blobs(result.course, blobs)
            result.counts = reconcile_counts(total, len(blobs))
            report(f"Media ready: {result.counts.describe()}", 60)
        except OperationCancelled:
            result.status = RunStatus.cancelled
            logger.info("Run cancelled before loading finished")
        return result


class PackageOutcome:
    def __init__(self, report: PackageReport, package: Optional[bytes] = None) -> None:
        self.report = report
        self.package = package

    @property
    def status(self) -> RunStatus:
        return self.report.status


def _build_report(result: PipelineResult) -> PackageReport:
    return PackageReport(
        status=result.status,
        counts=result.counts,
        summary=result.counts.describe(),
        failures=result.failures,
        diagnostics=result.diagnostics,
        warning=result.warning,
    )


async def generate_package(
    course: Any,
    *,
    store: MediaStore,
    assembler: PackageAssembler,
    project_id: str,
    token: CancellationToken,
    progress: Optional[ProgressCallback] = None,
    package_settings: Optional[PackageSettings] = None,
    blobs: Optional[BlobMap] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> PackageOutcome:
    """Run the media pipeline and hand its output to ``assembler``.

    Only ConversionFailure and PackageGenerationError escape; per-media
    failures end up in the report and cancellation in its status.
    """
    report = progress or _no_progress
    pipeline = MediaPipeline(store, client)
    result = await pipeline.run(course, token, report, blobs)
    if result.cancelled:
        report("Package generation cancelled by user", 0)
        return PackageOutcome(_build_report(result))

    try:
        package = await token.run(
            assembler.assemble(result.course, result.blobs, project_id, report, package_settings)
        )
    except OperationCancelled:
        result.status = RunStatus.cancelled
        report("Package generation cancelled by user", 0)
        return PackageOutcome(_build_report(result))
    except MediaPipelineError:
        raise
    except Exception as exc:
        raise PackageGenerationError(f"Package generation failed: {exc}") from exc
    if not package:
        raise PackageGenerationError("Package generation returned no data")

    outcome = PackageOutcome(_build_report(result), package)
    if result.warning:
        report(f"{result.warning} ({result.counts.describe()})", 100)
    else:
        report(f"Package ready: {result.counts.describe()}", 100)
    return outcome


class RunHandle:
    def __init__(self, token: CancellationToken, blobs: BlobMap, task: "asyncio.Task[Any]") -> None:
        self.token = token
        self.blobs = blobs
        self.task = task


class RunRegistry:
    """At most one active run per project.

    Starts for the same project are serialized, so the cancel of the previous
    run and the registration of the next one happen as a single step.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunHandle] = {}
        self._starting: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def active(self, project_id: str) -> bool:
        handle = self._runs.get(project_id)
        return handle is not None and not handle.task.done()

    def blobs(self, project_id: str) -> Optional[BlobMap]:
        handle = self._runs.get(project_id)
        return handle.blobs if handle else None

    async def start(
        self,
        project_id: str,
        factory: Callable[[CancellationToken, BlobMap], Awaitable[T]],
    ) -> "asyncio.Task[T]":
        async with self._starting[project_id]:
            await self.cancel(project_id, reason="superseded by a new run")
            token = CancellationToken(name=f"package {project_id}")
            blobs = BlobMap()
            task = asyncio.create_task(factory(token, blobs))
            self._runs[project_id] = RunHandle(token, blobs, task)
        logger.info("Started package run for %s", project_id)
        return task

    async def cancel(self, project_id: str, reason: str = "cancelled by user") -> bool:
        handle = self._runs.get(project_id)
        if handle is None:
            return False
        was_running = not handle.task.done()
        handle.token.cancel(reason)
        await asyncio.gather(handle.task, return_exceptions=True)
        handle.blobs.clear()
        if self._runs.get(project_id) is handle:
            del self._runs[project_id]
        return was_running
