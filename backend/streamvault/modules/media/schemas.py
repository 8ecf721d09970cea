"""Pydantic read models for media records."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from streamvault.modules.media.models import JobStage, MediaStatus


class AssetResponse(BaseModel):
    """Schema for asset response."""
    id: int
    owner_id: int
    title: str
    slug: str
    description: Optional[str] = None
    tags: Optional[list[str]] = None
    is_published: bool
    thumbnail_key: Optional[str] = None

    class Config:
        from_attributes = True


class RenditionResponse(BaseModel):
    """Schema for rendition response."""
    id: int
    name: str
    width: int
    height: int
    bitrate_kbps: int
    codec_video: str
    codec_audio: str
    format: str
    storage_key: Optional[str] = None
    file_size_bytes: Optional[int] = None
    status: MediaStatus
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class SourceFileStatusResponse(BaseModel):
    """What a client polling a transcode sees."""
    id: int
    asset_id: int
    storage_key: str
    status: MediaStatus
    stage: JobStage
    progress_percent: int = Field(..., ge=0, le=100)
    attempts: int
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    codec_video: Optional[str] = None
    bitrate: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    renditions: list[RenditionResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True
