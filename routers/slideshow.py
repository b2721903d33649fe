"""
Router for photo-to-video slideshow endpoints.
Handles photo upload, job status polling and thumbnail serving.
"""

import os
import shutil
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile
from fastapi.responses import FileResponse
from config import API_TOKEN, ESTIMATED_SECONDS_PER_PHOTO, THUMBNAIL_DIR, UPLOAD_DIR
from jobs import create_job, fail_job, get_job, new_job_id
from models import ErrorCode, JobStatus
from schemas import JobResponse, StatusResponse
from services import UploadValidator
import tasks


def require_token(authorization: Optional[str] = Header(None)):
    """Bearer token guard, active only when API_TOKEN is configured."""
    if not API_TOKEN:
        return
    if authorization != f"Bearer {API_TOKEN}":
        raise HTTPException(status_code=401, detail="Authorization required")


# Create the router
router = APIRouter(tags=["slideshow"])


def _store_upload(upload: UploadFile, directory: str, stem: str) -> str:
    extension = os.path.splitext(upload.filename or "")[1].lower()
    file_path = os.path.join(directory, f"{stem}{extension}")
    upload.file.seek(0)
    with open(file_path, "wb") as buffer:
        shutil.copyfileobj(upload.file, buffer)
    return file_path


@router.post("/create-from-photos/", response_model=JobResponse, dependencies=[Depends(require_token)])
async def create_from_photos(
    photos: Optional[List[UploadFile]] = File(None),
    audio: Optional[UploadFile] = File(None),
    settings: str = Form("{}"),
):
    """
    Validates the photos, stores them, creates a job record and hands it
    to the worker pool. Returns immediately with the job ID.
    """
    photos = photos or []
    options = UploadValidator(photos, audio, settings).run()

    job_id = new_job_id()
    job_dir = os.path.join(UPLOAD_DIR, job_id)
    os.makedirs(job_dir, exist_ok=True)

    try:
        photo_paths = [
            _store_upload(photo, job_dir, f"photo_{index:02d}")
            for index, photo in enumerate(photos)
        ]
        audio_path = _store_upload(audio, job_dir, "audio") if audio is not None else None
    except OSError as e:
        shutil.rmtree(job_dir, ignore_errors=True)
        logging.error(f"Failed to store uploads for job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save uploaded photos.")

    create_job(
        job_id,
        photos=photo_paths,
        transition=options.transition,
        quality=options.quality,
        duration_per_photo=options.duration_per_photo,
        music=options.music,
        audio_path=audio_path,
        webhook_url=options.webhook_url,
    )

    try:
        tasks.enqueue_render(job_id)
    except Exception as e:
        logging.error(f"Failed to submit job {job_id} to the worker pool: {e}")
        fail_job(job_id, ErrorCode.INTERNAL_ERROR, "Failed to start the video creation job.")
        raise HTTPException(status_code=500, detail="Failed to start the video creation job.")

    return JobResponse(
        job_id=job_id,
        status=JobStatus.QUEUED,
        message="Video creation started",
        estimated_time=len(photo_paths) * ESTIMATED_SECONDS_PER_PHOTO,
    )


@router.get("/video-status/{job_id}", response_model=StatusResponse, dependencies=[Depends(require_token)])
async def get_video_status(job_id: str):
    """
    Returns the current status of a job. Unknown IDs get a 404.
    """
    job = get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found.")

    return StatusResponse(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        message=job.message,
        video_url=job.video_url,
        thumbnail_url=job.thumbnail_url,
        error=job.error,
        error_code=job.error_code,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


@router.get("/thumbnails/{filename}")
async def get_thumbnail(filename: str):
    """
    Serves a locally generated thumbnail.
    Used when the hosting API did not return one.
    """
    path = os.path.abspath(os.path.join(THUMBNAIL_DIR, filename))
    if os.path.dirname(path) != os.path.abspath(THUMBNAIL_DIR):
        raise HTTPException(status_code=403, detail="Forbidden: Access to this path is not allowed.")

    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Thumbnail not found.")

    return FileResponse(path, media_type="image/jpeg", filename=os.path.basename(path))
