"""
Service classes for the photo-to-video slideshow backend.
Contains UploadValidator, SlideshowRenderer, ApiVideoClient and WebhookNotifier.
"""

import hashlib
import hmac
import json
import logging
import os
import subprocess
import threading
import time
from collections import deque
from typing import Callable, List, NamedTuple, Optional

import ffmpeg
import requests
from fastapi import HTTPException
from pydantic import ValidationError

from config import (
    ALLOWED_AUDIO_TYPES,
    ALLOWED_PHOTO_TYPES,
    API_VIDEO_BASE_URL,
    API_VIDEO_KEY,
    API_VIDEO_TAGS,
    FFMPEG_BINARY,
    HOSTING_TIMEOUT,
    MAX_AUDIO_SIZE,
    MAX_PHOTO_SIZE,
    MAX_PHOTOS,
    MIN_PHOTOS,
    MUSIC_DIR,
    MUSIC_PRESETS,
    OUTPUT_DIR,
    OUTPUT_FPS,
    QUALITY_PROFILES,
    RENDER_TIMEOUT,
    THUMBNAIL_DIR,
    TRANSITION_DURATION,
    WEBHOOK_ATTEMPTS,
    WEBHOOK_SECRET,
    WEBHOOK_TIMEOUT,
    WEBHOOK_URL,
)
from models import ErrorCode
from schemas import SlideshowSettings, WebhookPayload

# Ensure directories exist
os.makedirs(OUTPUT_DIR, exist_ok=True)
os.makedirs(THUMBNAIL_DIR, exist_ok=True)


class SlideshowError(Exception):
    """Base class for failures while processing a render job."""
    code = ErrorCode.INTERNAL_ERROR


class RenderError(SlideshowError):
    code = ErrorCode.TRANSCODE_FAILED


class RenderTimeoutError(RenderError):
    code = ErrorCode.TRANSCODE_TIMEOUT


class HostingUploadError(SlideshowError):
    code = ErrorCode.UPLOAD_FAILED


def _file_size(upload) -> int:
    handle = upload.file
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(0)
    return size


class UploadValidator:
    """Validates an upload request before any job is created."""

    def __init__(self, photos: list, audio=None, raw_settings: Optional[str] = None):
        self.photos = photos or []
        self.audio = audio
        self.raw_settings = raw_settings

    def _reject(self, detail: str):
        logging.warning(f"Rejected upload: {detail}")
        raise HTTPException(status_code=400, detail=detail)

    def _check_count(self):
        count = len(self.photos)
        if count < MIN_PHOTOS:
            self._reject(f"Minimum {MIN_PHOTOS} photos required, got {count}.")
        if count > MAX_PHOTOS:
            self._reject(f"Maximum {MAX_PHOTOS} photos allowed, got {count}.")

    def _check_file(self, upload, allowed: dict, max_size: int, kind: str):
        name = upload.filename or ""
        extension = os.path.splitext(name)[1].lower()
        content_type = (upload.content_type or "").lower()
        if content_type not in allowed or extension not in allowed[content_type]:
            self._reject(f"Invalid {kind} file type for '{name}'.")
        size = _file_size(upload)
        if size == 0:
            self._reject(f"{kind.capitalize()} file '{name}' is empty.")
        if size > max_size:
            self._reject(
                f"{kind.capitalize()} file '{name}' exceeds {max_size // (1024 * 1024)}MB."
            )

    def _parse_settings(self) -> SlideshowSettings:
        try:
            data = json.loads(self.raw_settings or "{}")
        except json.JSONDecodeError:
            self._reject("Invalid settings JSON.")
        if not isinstance(data, dict):
            self._reject("Settings must be a JSON object.")
        try:
            return SlideshowSettings(**data)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            self._reject(f"Invalid setting '{field}': {first['msg']}")

    def run(self) -> SlideshowSettings:
        self._check_count()
        for photo in self.photos:
            self._check_file(photo, ALLOWED_PHOTO_TYPES, MAX_PHOTO_SIZE, "photo")
        if self.audio is not None:
            self._check_file(self.audio, ALLOWED_AUDIO_TYPES, MAX_AUDIO_SIZE, "audio")
        return self._parse_settings()


def resolve_music_path(music: str) -> Optional[str]:
    """Map a music preset to its file, or None when unavailable."""
    filename = MUSIC_PRESETS.get(music)
    if not filename:
        return None
    path = os.path.join(MUSIC_DIR, filename)
    if not os.path.exists(path):
        logging.warning(f"⚠️ Music file not found: {path}")
        return None
    return path


class SlideshowRenderer:
    """Renders a list of photos into one video with the ffmpeg binary."""

    def __init__(
        self,
        job_id: str,
        photos: List[str],
        transition: str = "fade",
        quality: str = "high",
        duration_per_photo: float = 4,
        audio_path: Optional[str] = None,
        timeout: int = RENDER_TIMEOUT,
    ):
        if not photos:
            raise RenderError("No photos to render.")
        self.job_id = job_id
        self.photos = photos
        self.transition = transition
        self.width, self.height, self.crf, self.preset = QUALITY_PROFILES[quality]
        self.duration = duration_per_photo
        self.audio_path = audio_path
        self.timeout = timeout
        self.output_path = os.path.join(OUTPUT_DIR, f"slideshow-{job_id}.mp4")

    @property
    def expected_duration(self) -> float:
        count = len(self.photos)
        if self.transition in ("fade", "slide") and count > 1:
            return count * self.duration - (count - 1) * TRANSITION_DURATION
        return count * self.duration

    def _photo_stream(self, path: str):
        if self.transition == "zoom":
            # Ken Burns: zoompan emits all frames of the clip from one still
            frames = round(self.duration * OUTPUT_FPS)
            return (
                ffmpeg.input(path)
                .filter("scale", self.width, self.height, force_original_aspect_ratio="decrease")
                .filter("pad", self.width, self.height, "(ow-iw)/2", "(oh-ih)/2")
                .filter(
                    "zoompan",
                    z="if(lte(zoom,1.0),1.1,max(1.001,zoom-0.0015))",
                    d=frames,
                    x="iw/2-(iw/zoom/2)",
                    y="ih/2-(ih/zoom/2)",
                    s=f"{self.width}x{self.height}",
                    fps=OUTPUT_FPS,
                )
                .filter("setsar", 1)
                .filter("format", "yuv420p")
            )
        return (
            ffmpeg.input(path, loop=1, t=self.duration)
            .filter("scale", self.width, self.height, force_original_aspect_ratio="decrease")
            .filter("pad", self.width, self.height, "(ow-iw)/2", "(oh-ih)/2")
            .filter("setsar", 1)
            .filter("fps", fps=OUTPUT_FPS)
            .filter("format", "yuv420p")
        )

    def _video_stream(self):
        clips = [self._photo_stream(path) for path in self.photos]
        if len(clips) == 1:
            return clips[0]

        if self.transition in ("fade", "slide"):
            effect = "fade" if self.transition == "fade" else "slideleft"
            step = self.duration - TRANSITION_DURATION
            stream = clips[0]
            for i, clip in enumerate(clips[1:], start=1):
                stream = ffmpeg.filter(
                    [stream, clip],
                    "xfade",
                    transition=effect,
                    duration=TRANSITION_DURATION,
                    offset=round(i * step, 3),
                )
            return stream

        return ffmpeg.concat(*clips, v=1, a=0)

    def build_command(self) -> List[str]:
        video = self._video_stream()
        output_args = {
            "vcodec": "libx264",
            "preset": self.preset,
            "crf": self.crf,
            "pix_fmt": "yuv420p",
            "r": OUTPUT_FPS,
            "movflags": "+faststart",
        }
        if self.audio_path:
            # Loop the track so -shortest always ends on the last photo
            audio = ffmpeg.input(self.audio_path, stream_loop=-1).audio
            output = ffmpeg.output(
                video, audio, self.output_path,
                acodec="aac", audio_bitrate="128k", shortest=None, **output_args
            )
        else:
            output = ffmpeg.output(video, self.output_path, **output_args)

        output = output.global_args("-progress", "pipe:1", "-nostats").overwrite_output()
        return output.compile(cmd=FFMPEG_BINARY)

    def _percent(self, line: str) -> Optional[float]:
        key, _, value = line.strip().partition("=")
        if key == "progress" and value == "end":
            return 100.0
        if key != "out_time_ms":
            return None
        try:
            seconds = int(value) / 1_000_000  # reported in microseconds
        except ValueError:
            return None
        return max(0.0, min(100.0, seconds / self.expected_duration * 100))

    def run(self, on_progress: Optional[Callable[[float], None]] = None) -> str:
        command = self.build_command()
        logging.info(f"🎬 Running ffmpeg for job {self.job_id}: {' '.join(command)}")

        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        stderr_tail = deque(maxlen=20)

        def _drain_stderr():
            for line in process.stderr:
                stderr_tail.append(line.rstrip())

        def _read_progress():
            for line in process.stdout:
                percent = self._percent(line)
                if percent is not None and on_progress:
                    on_progress(percent)

        readers = [
            threading.Thread(target=_drain_stderr, daemon=True),
            threading.Thread(target=_read_progress, daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            logging.error(f"❌ ffmpeg timed out for job {self.job_id} after {self.timeout}s")
            self._cleanup()
            raise RenderTimeoutError(f"Rendering timed out after {self.timeout} seconds.")
        finally:
            for reader in readers:
                reader.join(timeout=5)

        if returncode != 0:
            stderr = "\n".join(stderr_tail)
            logging.error(f"❌ ffmpeg failed for job {self.job_id}. Stderr:\n{stderr}")
            last_line = stderr_tail[-1] if stderr_tail else "Unknown ffmpeg error"
            self._cleanup()
            raise RenderError(f"ffmpeg exited with code {returncode}: {last_line}")

        if not os.path.exists(self.output_path):
            raise RenderError("Video file not found after a successful render.")

        logging.info(f"✅ Slideshow rendered for job {self.job_id}: {self.output_path}")
        return self.output_path

    def _cleanup(self):
        if os.path.exists(self.output_path):
            os.remove(self.output_path)


def generate_thumbnail(video_path: str, job_id: str) -> Optional[str]:
    """Grab the first frame of the video as a JPEG. Returns None on failure."""
    thumbnail_path = os.path.join(THUMBNAIL_DIR, f"{job_id}.jpg")
    try:
        (
            ffmpeg.input(video_path, ss=0)
            .output(thumbnail_path, vframes=1)
            .overwrite_output()
            .run(cmd=FFMPEG_BINARY, capture_stdout=True, capture_stderr=True)
        )
    except ffmpeg.Error as e:
        error_details = e.stderr.decode("utf8") if e.stderr else "Unknown FFmpeg error"
        logging.warning(f"Thumbnail generation failed for job {job_id}: {error_details}")
        return None
    return thumbnail_path


class HostedVideo(NamedTuple):
    video_id: str
    player_url: str
    thumbnail_url: Optional[str]


class ApiVideoClient:
    """Uploads finished videos to api.video."""

    def __init__(
        self,
        api_key: str = API_VIDEO_KEY,
        base_url: str = API_VIDEO_BASE_URL,
        timeout: int = HOSTING_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def upload(self, video_path: str, title: str) -> HostedVideo:
        if not self.api_key:
            raise HostingUploadError("API_VIDEO_KEY not configured")

        try:
            created = self.session.post(
                f"{self.base_url}/videos",
                json={"title": title, "public": True, "tags": API_VIDEO_TAGS},
                headers=self._headers(),
                timeout=self.timeout,
            )
            created.raise_for_status()
            video_id = created.json()["videoId"]

            logging.info(f"⬆️ Uploading {video_path} to api.video as {video_id}")
            with open(video_path, "rb") as source:
                uploaded = self.session.post(
                    f"{self.base_url}/videos/{video_id}/source",
                    files={"file": (os.path.basename(video_path), source, "video/mp4")},
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            uploaded.raise_for_status()
            assets = uploaded.json().get("assets") or {}
        except (requests.RequestException, ValueError, KeyError) as e:
            logging.error(f"❌ Upload to api.video failed: {e}")
            raise HostingUploadError(f"Failed to upload video: {e}") from e

        player_url = assets.get("player")
        if not player_url:
            raise HostingUploadError("Hosting API response did not include a player URL.")
        return HostedVideo(video_id, player_url, assets.get("thumbnail"))


class WebhookNotifier:
    """Reports terminal job states to a callback URL."""

    def __init__(
        self,
        default_url: str = WEBHOOK_URL,
        secret: str = WEBHOOK_SECRET,
        attempts: int = WEBHOOK_ATTEMPTS,
        timeout: int = WEBHOOK_TIMEOUT,
        session: Optional[requests.Session] = None,
        backoff: float = 1.0,
    ):
        self.default_url = default_url
        self.secret = secret
        self.attempts = attempts
        self.timeout = timeout
        self.session = session or requests.Session()
        self.backoff = backoff

    def _sign(self, body: bytes) -> str:
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    def notify(self, job) -> bool:
        url = job.webhook_url or self.default_url
        if not url:
            return False

        payload = WebhookPayload(
            job_id=job.id,
            status=job.status,
            video_url=job.video_url,
            thumbnail_url=job.thumbnail_url,
            error=job.error,
            error_code=job.error_code,
        )
        body = payload.model_dump_json().encode()
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Slideshow-Signature"] = f"sha256={self._sign(body)}"

        for attempt in range(1, self.attempts + 1):
            try:
                response = self.session.post(url, data=body, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                logging.info(f"📨 Webhook delivered for job {job.id} ({job.status.value})")
                return True
            except requests.RequestException as e:
                logging.warning(
                    f"Webhook attempt {attempt}/{self.attempts} for job {job.id} failed: {e}"
                )
                if attempt < self.attempts:
                    time.sleep(self.backoff * attempt)

        logging.error(f"❌ Giving up on webhook for job {job.id} after {self.attempts} attempts")
        return False
