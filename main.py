import asyncio
import logging
import os
import shutil
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import (
    CORS_ORIGINS,
    FFMPEG_BINARY,
    JOB_TTL,
    OUTPUT_DIR,
    RENDER_TIMEOUT,
    RENDER_TIMEOUT_GRACE,
    TASK_BACKEND,
    UPLOAD_TIMEOUT,
    THUMBNAIL_DIR,
    UPLOAD_DIR,
)
from database import init_db
from jobs import expire_stale_jobs, purge_expired_jobs
from routers import slideshow
import tasks

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

MAINTENANCE_INTERVAL = 60  # seconds


async def _local_maintenance():
    """Stands in for Celery beat when jobs run in the local pool."""
    ticks = 0
    while True:
        await asyncio.sleep(MAINTENANCE_INTERVAL)
        ticks += 1
        try:
            await asyncio.to_thread(expire_stale_jobs, RENDER_TIMEOUT, RENDER_TIMEOUT_GRACE, UPLOAD_TIMEOUT)
            if ticks % 60 == 0:
                await asyncio.to_thread(purge_expired_jobs, JOB_TTL)
        except Exception:
            logging.exception("Job maintenance failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    for directory in (UPLOAD_DIR, OUTPUT_DIR, THUMBNAIL_DIR):
        os.makedirs(directory, exist_ok=True)
    init_db()
    if not shutil.which(FFMPEG_BINARY):
        logging.warning(f"⚠️ ffmpeg binary '{FFMPEG_BINARY}' not found on PATH; renders will fail")

    maintenance = None
    if TASK_BACKEND == "local":
        maintenance = asyncio.create_task(_local_maintenance())
    logging.info(f"🚀 Slideshow backend started ({TASK_BACKEND} worker pool)")
    yield
    if maintenance:
        maintenance.cancel()
    if TASK_BACKEND == "local":
        tasks.get_local_pool().shutdown(wait=False)


app = FastAPI(
    title="Photo-to-Video Slideshow Backend",
    description="Turns listing photos into a hosted slideshow video.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(slideshow.router)


@app.get("/")
def read_root():
    return {"status": "🚀 Slideshow backend is running!"}
