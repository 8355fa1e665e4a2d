from __future__ import annotations

import logging
import shutil
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from sqlmodel import select

from .assembler import PackageAssembler, ZipPackageAssembler
from .cancellation import CancellationToken
from .config import settings
from .db import get_session, init_db
from .errors import ConversionFailure, MediaNotFound, PackageGenerationError
from .jobs import create_job, get_job, latest_job, update_job
from .loader import BlobMap
from .models import JobRead, JobStatus, JobType, Project, ProjectCreate, ProjectRead
from .pipeline import RunRegistry, generate_package
from .reconcile import estimate_counts
from .schemas import (
    MediaCounts,
    MediaMetadata,
    MediaType,
    PackageGenerateRequest,
    PackageSettings,
    RunStatus,
    StoredMediaItem,
    YouTubeMediaCreate,
)
from .storage import (
    atomic_write_bytes,
    atomic_write_json,
    ensure_project_dirs,
    project_dir,
    read_json,
)
from .store import ProjectMediaStore
from .walker import coerce_course

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

runs = RunRegistry()
assembler: PackageAssembler = ZipPackageAssembler()


@app.on_event("startup")
def _startup() -> None:
    init_db()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def _get_project(project_id: str) -> Project:
    with get_session() as session:
        project = session.exec(select(Project).where(Project.id == project_id)).first()
        if not project:
            raise HTTPException(status_code=404, detail="Project not found")
        return project


def _content_path(project_id: str):
    return project_dir(project_id) / "content.json"


def _package_path(project_id: str):
    return project_dir(project_id) / "outputs" / "package.zip"


def _report_path(project_id: str):
    return project_dir(project_id) / "outputs" / "package_report.json"


@app.post("/projects", response_model=ProjectRead)
async def create_project(payload: ProjectCreate) -> ProjectRead:
    project = Project(name=payload.name)
    with get_session() as session:
        session.add(project)
        session.commit()
        session.refresh(project)
    ensure_project_dirs(project.id)
    return ProjectRead.model_validate(project)


@app.get("/projects", response_model=list[ProjectRead])
async def list_projects() -> list[ProjectRead]:
    with get_session() as session:
        projects = session.exec(select(Project)).all()
    return [ProjectRead.model_validate(p) for p in projects]


@app.delete("/projects/{project_id}")
async def delete_project(project_id: str) -> dict[str, str]:
    _get_project(project_id)
    await runs.cancel(project_id, reason="project deleted")
    with get_session() as session:
        project = session.exec(select(Project).where(Project.id == project_id)).first()
        if project:
            session.delete(project)
            session.commit()
    folder = project_dir(project_id)
    if folder.exists():
        shutil.rmtree(folder)
    return {"status": "ok"}


@app.put("/projects/{project_id}/content")
async def update_content(project_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    _get_project(project_id)
    try:
        course = coerce_course(payload)
    except ConversionFailure as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    data = course.model_dump(mode="json")
    atomic_write_json(_content_path(project_id), data)
    return {"status": "ok", "content": data}


@app.get("/projects/{project_id}/content")
async def get_content(project_id: str) -> dict[str, Any]:
    _get_project(project_id)
    data = read_json(_content_path(project_id))
    if not data:
        raise HTTPException(status_code=404, detail="Course content not found")
    return data


@app.post("/projects/{project_id}/media", response_model=StoredMediaItem)
async def upload_media(
    project_id: str,
    request: Request,
    page_id: str,
    media_type: MediaType,
    file_name: Optional[str] = None,
    title: Optional[str] = None,
) -> StoredMediaItem:
    _get_project(project_id)
    if media_type == MediaType.youtube:
        raise HTTPException(status_code=400, detail="Use /media/youtube for embedded videos")
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty media upload")
    content_type = request.headers.get("content-type")
    metadata = MediaMetadata(
        mime_type=content_type.split(";", 1)[0].strip() if content_type else None,
        original_name=file_name,
        title=title,
        source="upload",
    )
    store = ProjectMediaStore(project_id)
    return await store.store_media(data, page_id, media_type, metadata)


@app.post("/projects/{project_id}/media/youtube", response_model=StoredMediaItem)
async def add_youtube_media(project_id: str, payload: YouTubeMediaCreate) -> StoredMediaItem:
    _get_project(project_id)
    store = ProjectMediaStore(project_id)
    return await store.store_youtube(
        payload.url,
        payload.page_id,
        title=payload.title,
        clip_start=payload.clip_start,
        clip_end=payload.clip_end,
    )


@app.get("/projects/{project_id}/media", response_model=list[StoredMediaItem])
async def list_media(project_id: str) -> list[StoredMediaItem]:
    _get_project(project_id)
    return await ProjectMediaStore(project_id).list_all_media()


@app.get("/projects/{project_id}/media/{media_id}")
async def get_media_file(project_id: str, media_id: str) -> Response:
    _get_project(project_id)
    try:
        stored = await ProjectMediaStore(project_id).require_media(media_id)
    except MediaNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    if stored.data is None:
        raise HTTPException(status_code=404, detail="Media is embedded by reference")
    return Response(
        content=stored.data,
        media_type=stored.item.metadata.mime_type or "application/octet-stream",
    )


@app.get("/projects/{project_id}/package/estimate", response_model=MediaCounts)
async def estimate_package(project_id: str) -> MediaCounts:
    _get_project(project_id)
    data = read_json(_content_path(project_id))
    if not data:
        raise HTTPException(status_code=400, detail="Save course content first")
    store_items = await ProjectMediaStore(project_id).list_all_media()
    return estimate_counts(coerce_course(data), store_items)


async def _run_package_job(
    job_id: str,
    project_id: str,
    package_settings: Optional[PackageSettings],
    token: CancellationToken,
    blobs: BlobMap,
) -> None:
    update_job(job_id, status=JobStatus.running, progress=0.0, message="Preparing course content...")

    def progress(message: str, percent: float) -> None:
        update_job(job_id, progress=min(max(percent / 100, 0.0), 0.99), message=message)

    try:
        content = read_json(_content_path(project_id))
        outcome = await generate_package(
            content,
            store=ProjectMediaStore(project_id),
            assembler=assembler,
            project_id=project_id,
            token=token,
            progress=progress,
            package_settings=package_settings,
            blobs=blobs,
        )
        if outcome.status == RunStatus.cancelled or outcome.package is None:
            atomic_write_json(_report_path(project_id), outcome.report.model_dump(mode="json"))
            update_job(job_id, status=JobStatus.cancelled, message="Package generation cancelled by user")
            return
        package_path = _package_path(project_id)
        atomic_write_bytes(package_path, outcome.package)
        report = outcome.report.model_copy(update={"package_path": str(package_path)})
        atomic_write_json(_report_path(project_id), report.model_dump(mode="json"))
        update_job(
            job_id,
            status=JobStatus.succeeded,
            progress=1.0,
            message=report.warning or f"Package ready: {report.summary}",
            warning=report.warning,
            result_path=str(package_path),
        )
    except (ConversionFailure, PackageGenerationError) as exc:
        logger.warning("Package generation failed for %s: %s", project_id, exc)
        update_job(job_id, status=JobStatus.failed, message=str(exc))
    except Exception as exc:
        logger.exception("Unexpected error generating package for %s", project_id)
        update_job(job_id, status=JobStatus.failed, message=str(exc))


@app.post("/projects/{project_id}/package/generate", response_model=JobRead)
async def start_package(project_id: str, payload: Optional[PackageGenerateRequest] = None) -> JobRead:
    _get_project(project_id)
    if not _content_path(project_id).exists():
        raise HTTPException(status_code=400, detail="Save course content first")
    package_settings = payload.settings if payload else None
    job = create_job(project_id, JobType.package_generate)
    await runs.start(
        project_id,
        lambda token, blobs: _run_package_job(job.id, project_id, package_settings, token, blobs),
    )
    return JobRead.model_validate(job)


@app.post("/projects/{project_id}/package/cancel")
async def cancel_package(project_id: str) -> dict[str, Any]:
    _get_project(project_id)
    cancelled = await runs.cancel(project_id)
    job = latest_job(project_id, JobType.package_generate)
    return {"cancelled": cancelled, "job": JobRead.model_validate(job).model_dump(mode="json") if job else None}


@app.get("/projects/{project_id}/package/files")
async def package_files(project_id: str) -> dict[str, Any]:
    _get_project(project_id)
    blobs = runs.blobs(project_id)
    files = [
        {"file_name": name, "mime_type": blob.mime_type, "size": len(blob.data)}
        for name, blob in (blobs.items() if blobs is not None else [])
    ]
    return {"running": runs.active(project_id), "files": files}


@app.get("/projects/{project_id}/package/report")
async def package_report(project_id: str) -> dict[str, Any]:
    _get_project(project_id)
    report = read_json(_report_path(project_id))
    if not report:
        raise HTTPException(status_code=404, detail="No package has been generated")
    return report


@app.get("/projects/{project_id}/downloads/package.zip")
async def download_package(project_id: str) -> FileResponse:
    _get_project(project_id)
    path = _package_path(project_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail="Package not found")
    return FileResponse(path, filename="package.zip", media_type="application/zip")


@app.get("/jobs/{job_id}", response_model=JobRead)
async def get_job_status(job_id: str) -> JobRead:
    job = get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobRead.model_validate(job)


@app.delete("/projects/{project_id}/media")
async def delete_media(project_id: str) -> dict[str, int]:
    _get_project(project_id)
    await runs.cancel(project_id, reason="media library cleared")
    deleted = await ProjectMediaStore(project_id).delete_all()
    return {"deleted": deleted}
