"""
Pydantic models for data validation in the slideshow backend.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from config import (
    DEFAULT_DURATION_PER_PHOTO,
    MAX_DURATION_PER_PHOTO,
    MIN_DURATION_PER_PHOTO,
)
from models import ErrorCode, JobStatus


class SlideshowSettings(BaseModel):
    """Options sent alongside the photos in the `settings` form field."""
    duration_per_photo: float = Field(
        DEFAULT_DURATION_PER_PHOTO,
        ge=MIN_DURATION_PER_PHOTO,
        le=MAX_DURATION_PER_PHOTO,
    )
    transition: Literal["fade", "slide", "zoom", "none"] = "fade"
    quality: Literal["low", "medium", "high"] = "high"
    music: Literal["upbeat", "calm", "none"] = "upbeat"
    webhook_url: Optional[str] = None

    @field_validator("webhook_url")
    @classmethod
    def _check_webhook_url(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return value or None


class JobResponse(BaseModel):
    """Response when submitting a slideshow job."""
    job_id: str
    status: JobStatus
    message: str
    estimated_time: int  # seconds


class StatusResponse(BaseModel):
    """Response for polling a slideshow job."""
    job_id: str
    status: JobStatus
    progress: int
    message: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class WebhookPayload(BaseModel):
    """Body POSTed to the completion webhook."""
    job_id: str
    status: JobStatus
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
