"""
Configuration file for the photo-to-video slideshow backend.
Contains all global constants. Every value can be overridden through an
environment variable of the same name.
"""

import os

# --- Paths ---
PROJECT_ROOT = os.getenv("PROJECT_ROOT", os.getcwd())
MEDIA_DIR = os.getenv("MEDIA_DIR", os.path.join(PROJECT_ROOT, "media"))
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(MEDIA_DIR, "uploads"))
OUTPUT_DIR = os.getenv("OUTPUT_DIR", os.path.join(MEDIA_DIR, "outputs"))
THUMBNAIL_DIR = os.getenv("THUMBNAIL_DIR", os.path.join(MEDIA_DIR, "thumbnails"))
MUSIC_DIR = os.getenv("MUSIC_DIR", os.path.join(PROJECT_ROOT, "assets", "music"))

# --- Persistence & queue ---
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(PROJECT_ROOT, 'slideshow.db')}")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
TASK_BACKEND = os.getenv("TASK_BACKEND", "celery")  # "celery" or "local"

# --- Upload limits ---
MIN_PHOTOS = int(os.getenv("MIN_PHOTOS", "7"))
MAX_PHOTOS = int(os.getenv("MAX_PHOTOS", "8"))
MAX_PHOTO_SIZE = int(os.getenv("MAX_PHOTO_SIZE", str(10 * 1024 * 1024)))  # 10MB
MAX_AUDIO_SIZE = int(os.getenv("MAX_AUDIO_SIZE", str(20 * 1024 * 1024)))  # 20MB

ALLOWED_PHOTO_TYPES = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/jpg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/webp": (".webp",),
}
ALLOWED_AUDIO_TYPES = {
    "audio/mpeg": (".mp3",),
    "audio/mp4": (".m4a", ".mp4"),
    "audio/aac": (".aac", ".m4a"),
    "audio/wav": (".wav",),
    "audio/x-wav": (".wav",),
}

# --- Slideshow settings ---
DEFAULT_DURATION_PER_PHOTO = 4
MIN_DURATION_PER_PHOTO = 2
MAX_DURATION_PER_PHOTO = 10
TRANSITION_DURATION = 0.5
OUTPUT_FPS = 30
ESTIMATED_SECONDS_PER_PHOTO = 10

TRANSITIONS = ("fade", "slide", "zoom", "none")
MUSIC_PRESETS = {
    "upbeat": "upbeat.mp3",
    "calm": "calm.mp3",
}

# width, height, crf, x264 preset
QUALITY_PROFILES = {
    "low": (540, 960, 28, "veryfast"),
    "medium": (720, 1280, 23, "fast"),
    "high": (1080, 1920, 23, "medium"),
}

# --- Worker pool & timeouts ---
MAX_CONCURRENT_RENDERS = int(os.getenv("MAX_CONCURRENT_RENDERS", "2"))
RENDER_TIMEOUT = int(os.getenv("RENDER_TIMEOUT", "300"))  # 5 minutes
RENDER_TIMEOUT_GRACE = int(os.getenv("RENDER_TIMEOUT_GRACE", "30"))
JOB_TTL = int(os.getenv("JOB_TTL", str(24 * 60 * 60)))  # 24 hours
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")

# --- Hosting API (api.video) ---
API_VIDEO_BASE_URL = os.getenv("API_VIDEO_BASE_URL", "https://ws.api.video")
API_VIDEO_KEY = os.getenv("API_VIDEO_KEY", "")
API_VIDEO_TAGS = ["slideshow", "360auto"]
HOSTING_TIMEOUT = int(os.getenv("HOSTING_TIMEOUT", "120"))
# Create + source upload, each bounded by HOSTING_TIMEOUT
UPLOAD_TIMEOUT = int(os.getenv("UPLOAD_TIMEOUT", str(2 * HOSTING_TIMEOUT)))

# --- Webhook ---
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_TIMEOUT = int(os.getenv("WEBHOOK_TIMEOUT", "10"))
WEBHOOK_ATTEMPTS = 3

# --- HTTP ---
API_TOKEN = os.getenv("API_TOKEN", "")
CORS_ORIGINS = [o for o in os.getenv("CORS_ORIGINS", "*").split(",") if o]
