# models.py

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Float, Integer, String, Text
from database import Base


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)

    def can_move_to(self, target: "JobStatus") -> bool:
        """A job only ever moves forward; terminal states are final."""
        if self.is_terminal:
            return False
        return target.rank > self.rank


_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.UPLOADING: 2,
    JobStatus.DONE: 3,
    JobStatus.FAILED: 3,
}


class ErrorCode(str, enum.Enum):
    INVALID_INPUT = "invalid_input"
    TRANSCODE_FAILED = "transcode_failed"
    TRANSCODE_TIMEOUT = "transcode_timeout"
    UPLOAD_FAILED = "upload_failed"
    INTERNAL_ERROR = "internal_error"


class RenderJob(Base):
    """One row per photo-to-video slideshow request."""

    __tablename__ = "render_jobs"

    id = Column(String(36), primary_key=True, index=True)

    # Inputs
    photos = Column(JSON, nullable=False)  # stored photo paths, in display order
    audio_path = Column(String(500), nullable=True)
    transition = Column(String(20), nullable=False, default="fade")
    quality = Column(String(20), nullable=False, default="high")
    duration_per_photo = Column(Float, nullable=False, default=4)
    music = Column(String(20), nullable=False, default="upbeat")
    webhook_url = Column(String(500), nullable=True)

    # Status
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    message = Column(String(255), nullable=True)

    # Output
    video_url = Column(String(500), nullable=True)
    thumbnail_url = Column(String(500), nullable=True)
    hosted_video_id = Column(String(100), nullable=True)
    error = Column(Text, nullable=True)
    error_code = Column(Enum(ErrorCode), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    uploading_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def total_duration(self) -> float:
        return len(self.photos or []) * self.duration_per_photo
