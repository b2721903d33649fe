# tasks.py

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from celery import Celery

from config import (
    JOB_TTL,
    MAX_CONCURRENT_RENDERS,
    REDIS_URL,
    RENDER_TIMEOUT,
    RENDER_TIMEOUT_GRACE,
    TASK_BACKEND,
    UPLOAD_TIMEOUT,
)
from jobs import advance_job, expire_stale_jobs, fail_job, get_job, purge_expired_jobs
from models import ErrorCode, JobStatus
from services import (
    ApiVideoClient,
    SlideshowError,
    SlideshowRenderer,
    WebhookNotifier,
    generate_thumbnail,
    resolve_music_path,
)

celery = Celery('tasks', broker=REDIS_URL, backend=REDIS_URL)
celery.conf.update(
    worker_concurrency=MAX_CONCURRENT_RENDERS,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_time_limit=RENDER_TIMEOUT + UPLOAD_TIMEOUT + RENDER_TIMEOUT_GRACE,
    beat_schedule={
        "purge-expired-jobs": {"task": "tasks.purge_expired_jobs_task", "schedule": 60 * 60},
        "expire-stale-jobs": {"task": "tasks.expire_stale_jobs_task", "schedule": 60},
    },
)
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

RENDER_START, RENDER_END = 10, 70

# One hosting client and one notifier per worker process; their HTTP
# sessions are reused across jobs.
_uploader: Optional[ApiVideoClient] = None
_notifier: Optional[WebhookNotifier] = None
_clients_lock = threading.Lock()


def get_uploader() -> ApiVideoClient:
    global _uploader
    with _clients_lock:
        if _uploader is None:
            _uploader = ApiVideoClient()
        return _uploader


def get_notifier() -> WebhookNotifier:
    global _notifier
    with _clients_lock:
        if _notifier is None:
            _notifier = WebhookNotifier()
        return _notifier


def process_job(job_id: str, renderer_cls=SlideshowRenderer, uploader=None, notifier=None):
    """
    Run one render job end to end: render, upload, record the result.

    Every failure ends the job in `failed` with an error code; nothing is retried.
    """
    uploader = uploader or get_uploader()
    notifier = notifier or get_notifier()

    job = get_job(job_id)
    if not job:
        logging.error(f"❌ Worker received unknown job {job_id}")
        return
    if job.status != JobStatus.QUEUED:
        logging.warning(f"Skipping job {job_id}: already {job.status.value}")
        return

    logging.info(f"📝 Worker received job {job_id} ({len(job.photos)} photos, {job.transition})")
    output_path = None
    try:
        advance_job(job_id, status=JobStatus.PROCESSING, progress=RENDER_START, message="Preparing photos")

        renderer = renderer_cls(
            job_id=job_id,
            photos=job.photos,
            transition=job.transition,
            quality=job.quality,
            duration_per_photo=job.duration_per_photo,
            audio_path=job.audio_path or resolve_music_path(job.music),
        )

        def on_progress(percent: float):
            advance_job(
                job_id,
                progress=RENDER_START + percent * (RENDER_END - RENDER_START) / 100,
                message=f"Creating video... {round(percent)}%",
            )

        output_path = renderer.run(on_progress=on_progress)

        advance_job(job_id, status=JobStatus.UPLOADING, progress=RENDER_END, message="Uploading video")
        hosted = uploader.upload(output_path, title=f"Slideshow-{job_id}")
        advance_job(job_id, progress=90, message="Creating preview", hosted_video_id=hosted.video_id)

        thumbnail_url = hosted.thumbnail_url
        if not thumbnail_url and generate_thumbnail(output_path, job_id):
            thumbnail_url = f"/thumbnails/{job_id}.jpg"

        advance_job(
            job_id,
            status=JobStatus.DONE,
            progress=100,
            message="Done",
            video_url=hosted.player_url,
            thumbnail_url=thumbnail_url,
        )
        logging.info(f"✅ Worker finished job {job_id}. Video at: {hosted.player_url}")

    except SlideshowError as e:
        logging.error(f"❌ Worker failed job {job_id} ({e.code.value}). Error: {e}")
        fail_job(job_id, e.code, str(e))
    except Exception as e:
        logging.exception(f"❌ Worker failed job {job_id} with an unexpected error")
        fail_job(job_id, ErrorCode.INTERNAL_ERROR, str(e))
    finally:
        if output_path and os.path.exists(output_path):
            os.remove(output_path)

    finished = get_job(job_id)
    if finished:
        _release_inputs(finished)
        notifier.notify(finished)


def _release_inputs(job):
    """Drop the uploaded photos and audio; a local thumbnail is kept until purge."""
    for path in list(job.photos or []) + [job.audio_path]:
        if path and os.path.exists(path):
            os.remove(path)


@celery.task
def render_slideshow_task(job_id: str):
    process_job(job_id)


@celery.task
def purge_expired_jobs_task():
    return purge_expired_jobs(JOB_TTL)


@celery.task
def expire_stale_jobs_task():
    return expire_stale_jobs(RENDER_TIMEOUT, RENDER_TIMEOUT_GRACE, UPLOAD_TIMEOUT)


class LocalRenderPool:
    """
    In-process worker pool for single-host deployments.

    Runs at most `max_workers` jobs at a time; the rest wait in the executor queue.
    """

    def __init__(self, max_workers: int = MAX_CONCURRENT_RENDERS, handler=None):
        self.max_workers = max_workers
        self.handler = handler or process_job
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="render")
        self._lock = threading.Lock()
        self._active = 0
        self.peak = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def _run(self, job_id: str):
        with self._lock:
            self._active += 1
            self.peak = max(self.peak, self._active)
        try:
            self.handler(job_id)
        finally:
            with self._lock:
                self._active -= 1

    def submit(self, job_id: str) -> Future:
        return self._executor.submit(self._run, job_id)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


_local_pool: Optional[LocalRenderPool] = None


def get_local_pool() -> LocalRenderPool:
    global _local_pool
    if _local_pool is None:
        _local_pool = LocalRenderPool()
    return _local_pool


def enqueue_render(job_id: str):
    """Hand a queued job to the configured worker backend."""
    if TASK_BACKEND == "local":
        get_local_pool().submit(job_id)
    else:
        render_slideshow_task.delay(job_id)
    logging.info(f"✨ Job {job_id} submitted to the {TASK_BACKEND} worker pool")
