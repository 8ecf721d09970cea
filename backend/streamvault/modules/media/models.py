"""Media models for ingest and transcoding.

An Asset is the user-facing video. Each upload attached to it becomes a
SourceFile, and each SourceFile fans out to one Rendition per encoding
profile.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from streamvault.core.database import Base


class MediaStatus(str, Enum):
    """Processing status shared by SourceFile and Rendition.

    pending -> processing -> completed | failed. A failed unit may re-enter
    processing; nothing leaves completed or partially_completed.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


class JobStage(str, Enum):
    """Transcode job stage as shown to pollers."""

    QUEUED = "queued"
    DOWNLOADING = "downloading"
    PROBING = "probing"
    ENCODING = "encoding"
    THUMBNAIL_EXTRACTING = "thumbnail_extracting"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


class Asset(Base):
    """User-facing video record.

    Created before any upload grant is issued. The transcode pipeline only
    ever touches ``thumbnail_key``; publishing is decided elsewhere.
    """

    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(300), unique=True, nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Empty string means extraction was attempted and failed
    thumbnail_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    source_files: Mapped[list["SourceFile"]] = relationship(
        "SourceFile",
        back_populates="asset",
        order_by="SourceFile.id",
    )

    def __repr__(self) -> str:
        return f"<Asset(id={self.id}, slug={self.slug})>"


class SourceFile(Base):
    """One uploaded original and the state of its transcode job."""

    __tablename__ = "source_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    storage_key: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    original_filename: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    file_size_bytes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), default=MediaStatus.PENDING.value, nullable=False, index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Probed metadata, set only after a successful probe
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    codec_video: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    bitrate: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Job tracking
    stage: Mapped[str] = mapped_column(String(50), default=JobStage.QUEUED.value, nullable=False)
    progress_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0-100
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    job_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    asset: Mapped["Asset"] = relationship("Asset", back_populates="source_files")
    renditions: Mapped[list["Rendition"]] = relationship(
        "Rendition",
        back_populates="source_file",
        order_by="Rendition.id",
    )

    def __repr__(self) -> str:
        return f"<SourceFile(id={self.id}, status={self.status}, stage={self.stage})>"


class Rendition(Base):
    """One encoded output of a SourceFile for a single profile."""

    __tablename__ = "renditions"
    __table_args__ = (
        UniqueConstraint("source_file_id", "name", name="uq_renditions_source_file_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_file_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("source_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(50), nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    bitrate_kbps: Mapped[int] = mapped_column(Integer, nullable=False)
    codec_video: Mapped[str] = mapped_column(String(50), nullable=False)
    codec_audio: Mapped[str] = mapped_column(String(50), nullable=False)
    format: Mapped[str] = mapped_column(String(20), nullable=False)

    storage_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    file_size_bytes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), default=MediaStatus.PENDING.value, nullable=False
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    source_file: Mapped["SourceFile"] = relationship("SourceFile", back_populates="renditions")

    def __repr__(self) -> str:
        return f"<Rendition(source_file_id={self.source_file_id}, name={self.name}, status={self.status})>"
