"""
Job store for render jobs.

Every helper opens its own short-lived session so it can be called from the
API process, a Celery worker or a local pool thread alike.
"""

import logging
import os
import shutil
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from config import THUMBNAIL_DIR, UPLOAD_DIR, UPLOAD_TIMEOUT
from database import SessionLocal
from models import ErrorCode, JobStatus, RenderJob, utcnow


def new_job_id() -> str:
    return str(uuid.uuid4())


def create_job(
    job_id: str,
    photos: List[str],
    transition: str,
    quality: str,
    duration_per_photo: float,
    music: str,
    audio_path: Optional[str] = None,
    webhook_url: Optional[str] = None,
) -> RenderJob:
    """Insert a new job in the `queued` state."""
    db = SessionLocal()
    try:
        job = RenderJob(
            id=job_id,
            photos=photos,
            audio_path=audio_path,
            transition=transition,
            quality=quality,
            duration_per_photo=duration_per_photo,
            music=music,
            webhook_url=webhook_url,
            status=JobStatus.QUEUED,
            progress=0,
            message="Queued",
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        db.expunge(job)
        return job
    finally:
        db.close()


def get_job(job_id: str) -> Optional[RenderJob]:
    """Return a detached copy of the job, or None when the id is unknown."""
    db = SessionLocal()
    try:
        job = db.query(RenderJob).filter(RenderJob.id == job_id).first()
        if job:
            db.expunge(job)
        return job
    finally:
        db.close()


def advance_job(
    job_id: str,
    status: Optional[JobStatus] = None,
    progress: Optional[int] = None,
    message: Optional[str] = None,
    **fields,
) -> bool:
    """
    Apply an update to a job if it keeps the lifecycle monotonic.

    A status change must move forward (see `JobStatus.can_move_to`) and
    progress never goes down. Updates that would regress are dropped and
    False is returned.
    """
    db = SessionLocal()
    try:
        job = db.query(RenderJob).filter(RenderJob.id == job_id).first()
        if not job:
            logging.warning(f"Ignoring update for unknown job {job_id}")
            return False

        if job.status.is_terminal:
            logging.warning(f"Ignoring update for job {job_id}: already {job.status.value}")
            return False

        if status is not None and status != job.status:
            if not job.status.can_move_to(status):
                logging.warning(
                    f"Ignoring status regression for job {job_id}: "
                    f"{job.status.value} -> {status.value}"
                )
                return False
            job.status = status
            if status == JobStatus.PROCESSING and job.started_at is None:
                job.started_at = utcnow()
            if status == JobStatus.UPLOADING and job.uploading_at is None:
                job.uploading_at = utcnow()
            if status.is_terminal:
                job.completed_at = utcnow()

        if progress is not None:
            job.progress = max(job.progress or 0, min(100, int(progress)))
        if message is not None:
            job.message = message
        for name, value in fields.items():
            setattr(job, name, value)

        db.commit()
        return True
    finally:
        db.close()


def fail_job(job_id: str, code: ErrorCode, error: str) -> bool:
    """Move a job to `failed`, recording why."""
    return advance_job(
        job_id,
        status=JobStatus.FAILED,
        message="Video creation failed",
        error=error,
        error_code=code,
    )


def remove_job_files(job: RenderJob):
    """Delete the uploaded inputs and local thumbnail of a job."""
    shutil.rmtree(os.path.join(UPLOAD_DIR, job.id), ignore_errors=True)
    thumbnail = os.path.join(THUMBNAIL_DIR, f"{job.id}.jpg")
    if os.path.exists(thumbnail):
        os.remove(thumbnail)


def purge_expired_jobs(ttl_seconds: int) -> int:
    """Delete terminal jobs older than the TTL. Returns how many were removed."""
    cutoff = utcnow() - timedelta(seconds=ttl_seconds)
    db = SessionLocal()
    try:
        expired = (
            db.query(RenderJob)
            .filter(RenderJob.status.in_([JobStatus.DONE, JobStatus.FAILED]))
            .filter(RenderJob.created_at < cutoff)
            .all()
        )
        for job in expired:
            remove_job_files(job)
            db.delete(job)
        db.commit()
        if expired:
            logging.info(f"🗑️ Cleaned up {len(expired)} old jobs")
        return len(expired)
    finally:
        db.close()


def _stale_job_ids(status: JobStatus, since_column, cutoff: datetime) -> List[str]:
    db = SessionLocal()
    try:
        return [
            job_id
            for (job_id,) in db.query(RenderJob.id)
            .filter(RenderJob.status == status)
            .filter(since_column < cutoff)
            .all()
        ]
    finally:
        db.close()


def expire_stale_jobs(
    timeout_seconds: int,
    grace_seconds: int,
    upload_timeout_seconds: int = UPLOAD_TIMEOUT,
) -> List[str]:
    """
    Fail jobs that have overrun their current step.

    A `processing` job gets timeout + grace from `started_at` and fails as
    `transcode_timeout`. An `uploading` job gets upload_timeout + grace from
    `uploading_at` and fails as `upload_failed`. The worker kills its own
    ffmpeg process at the timeout; this catches jobs whose worker died before
    it could record the failure.
    """
    now = utcnow()
    rendering = _stale_job_ids(
        JobStatus.PROCESSING,
        RenderJob.started_at,
        now - timedelta(seconds=timeout_seconds + grace_seconds),
    )
    uploading = _stale_job_ids(
        JobStatus.UPLOADING,
        RenderJob.uploading_at,
        now - timedelta(seconds=upload_timeout_seconds + grace_seconds),
    )

    for job_id in rendering:
        logging.error(f"❌ Job {job_id} exceeded its render time limit, marking as failed")
        fail_job(
            job_id,
            ErrorCode.TRANSCODE_TIMEOUT,
            f"Video rendering did not finish within {timeout_seconds} seconds",
        )
    for job_id in uploading:
        logging.error(f"❌ Job {job_id} exceeded its upload time limit, marking as failed")
        fail_job(
            job_id,
            ErrorCode.UPLOAD_FAILED,
            f"Video upload did not finish within {upload_timeout_seconds} seconds",
        )
    return rendering + uploading
