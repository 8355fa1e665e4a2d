from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import select

from .db import get_session
from .models import Job, JobStatus, JobType

_FINISHED = {JobStatus.succeeded, JobStatus.failed, JobStatus.cancelled}


def create_job(project_id: str, job_type: JobType) -> Job:
    job = Job(project_id=project_id, job_type=job_type)
    with get_session() as session:
        session.add(job)
        session.commit()
        session.refresh(job)
    return job


def update_job(
    job_id: str,
    *,
    status: Optional[JobStatus] = None,
    progress: Optional[float] = None,
    message: Optional[str] = None,
    warning: Optional[str] = None,
    result_path: Optional[str] = None,
) -> Job:
    """Apply the given changes to a job.

    Progress updates that arrive after the job has finished are dropped, so
    a late callback from a cancelled run cannot overwrite its final state.
    """
    with get_session() as session:
        job = session.exec(select(Job).where(Job.id == job_id)).first()
        if not job:
            raise ValueError("Job not found")
        if status is None and job.status in _FINISHED:
            return job
        if status is not None:
            job.status = status
        if progress is not None:
            job.progress = progress
        if message is not None:
            job.message = message
        if warning is not None:
            job.warning = warning
        if result_path is not None:
            job.result_path = result_path
        job.updated_at = datetime.utcnow()
        session.add(job)
        session.commit()
        session.refresh(job)
        return job


def get_job(job_id: str) -> Optional[Job]:
    with get_session() as session:
        return session.exec(select(Job).where(Job.id == job_id)).first()


def latest_job(project_id: str, job_type: JobType) -> Optional[Job]:
    with get_session() as session:
        statement = (
            select(Job)
            .where(Job.project_id == project_id, Job.job_type == job_type)
            .order_by(Job.created_at.desc())
        )
        return session.exec(statement).first()
