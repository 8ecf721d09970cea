"""Repositories for Asset, SourceFile and Rendition records.

SourceFile transitions owned by a transcode job are single UPDATE statements
guarded by the job token, so an attempt that has been superseded by a newer
dispatch changes nothing. Callers commit after each transition.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from streamvault.core.config import settings
from streamvault.core.exceptions import truncate_error
from streamvault.modules.media.models import (
    Asset,
    JobStage,
    MediaStatus,
    Rendition,
    SourceFile,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(text: str) -> str:
    """Lower-case, hyphen-separated ASCII slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "video"


class AssetRepository:
    """Repository for Asset operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        owner_id: int,
        title: str,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        is_published: bool = False,
    ) -> Asset:
        """Create an asset with a unique slug derived from its title.

        Args:
            owner_id: Owning user (opaque to this service)
            title: Display title
            description: Optional description
            tags: Optional list of tags
            is_published: Initial publish flag

        Returns:
            Created Asset
        """
        asset = Asset(
            owner_id=owner_id,
            title=title,
            slug=await self.generate_slug(title),
            description=description,
            tags=tags,
            is_published=is_published,
            thumbnail_key=None,
        )
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def generate_slug(self, title: str) -> str:
        base = slugify(title)
        result = await self.session.execute(
            select(Asset.slug).where(Asset.slug.like(f"{base}%"))
        )
        taken = set(result.scalars().all())
        if base not in taken:
            return base
        suffix = len(taken)
        while f"{base}-{suffix}" in taken:
            suffix += 1
        return f"{base}-{suffix}"

    async def get_by_id(self, asset_id: int) -> Optional[Asset]:
        result = await self.session.execute(
            select(Asset).where(Asset.id == asset_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_thumbnail_key(self, asset_id: int, thumbnail_key: str) -> None:
        await self.session.execute(
            update(Asset)
            .where(Asset.id == asset_id)
            .values(thumbnail_key=thumbnail_key)
            .execution_options(synchronize_session=False)
        )


class SourceFileRepository:
    """Repository for SourceFile operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        asset_id: int,
        storage_key: str,
        file_size_bytes: int,
        mime_type: Optional[str] = None,
        original_filename: Optional[str] = None,
    ) -> SourceFile:
        """Insert a pending SourceFile.

        Raises IntegrityError (on flush) when the storage key is already
        registered.
        """
        source_file = SourceFile(
            asset_id=asset_id,
            storage_key=storage_key,
            file_size_bytes=file_size_bytes,
            mime_type=mime_type,
            original_filename=original_filename,
            status=MediaStatus.PENDING.value,
            stage=JobStage.QUEUED.value,
            progress_percent=0,
            attempts=0,
        )
        self.session.add(source_file)
        await self.session.flush()
        return source_file

    async def get_by_id(self, source_file_id: int) -> Optional[SourceFile]:
        result = await self.session.execute(
            select(SourceFile).where(SourceFile.id == source_file_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_with_renditions(self, source_file_id: int) -> Optional[SourceFile]:
        result = await self.session.execute(
            select(SourceFile)
            .where(SourceFile.id == source_file_id)
            .options(selectinload(SourceFile.renditions))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_storage_key(self, storage_key: str) -> Optional[SourceFile]:
        result = await self.session.execute(
            select(SourceFile).where(SourceFile.storage_key == storage_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def refresh(self, source_file: SourceFile) -> SourceFile:
        await self.session.refresh(source_file)
        return source_file

    async def claim_for_transcode(
        self,
        source_file_id: int,
        job_token: str,
        stale_retry_before: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set a dispatchable SourceFile into processing.

        Dispatchable means pending, or failed with no retry scheduled, or
        failed with a retry that should have run before ``stale_retry_before``
        (the retry message was lost). Returns False when another job already
        owns the row.

        Args:
            source_file_id: SourceFile to claim
            job_token: Token of the new job
            stale_retry_before: Cutoff for abandoned retries, defaults to now
                minus TRANSCODE_STALE_RETRY_GRACE_SECONDS
        """
        if stale_retry_before is None:
            stale_retry_before = _utcnow() - timedelta(
                seconds=settings.TRANSCODE_STALE_RETRY_GRACE_SECONDS
            )
        result = await self.session.execute(
            update(SourceFile)
            .where(
                and_(
                    SourceFile.id == source_file_id,
                    or_(
                        SourceFile.status == MediaStatus.PENDING.value,
                        and_(
                            SourceFile.status == MediaStatus.FAILED.value,
                            or_(
                                SourceFile.next_retry_at.is_(None),
                                SourceFile.next_retry_at < stale_retry_before,
                            ),
                        ),
                    ),
                )
            )
            .values(
                status=MediaStatus.PROCESSING.value,
                stage=JobStage.QUEUED.value,
                progress_percent=0,
                attempts=0,
                job_token=job_token,
                error_message=None,
                next_retry_at=None,
                processing_started_at=None,
                processing_completed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def begin_attempt(self, source_file_id: int, job_token: str, attempt: int) -> bool:
        """Move the row owned by ``job_token`` into processing for an attempt."""
        values = {
            "status": MediaStatus.PROCESSING.value,
            "stage": JobStage.QUEUED.value,
            "progress_percent": 0,
            "attempts": attempt,
            "error_message": None,
            "next_retry_at": None,
            "processing_completed_at": None,
        }
        if attempt == 1:
            values["processing_started_at"] = _utcnow()
        return await self._owned_update(source_file_id, job_token, values, (
            MediaStatus.PROCESSING.value,
            MediaStatus.FAILED.value,
        ))

    async def set_stage(
        self,
        source_file_id: int,
        job_token: str,
        stage: JobStage,
        progress_percent: int,
    ) -> bool:
        return await self._owned_update(source_file_id, job_token, {
            "stage": stage.value,
            "progress_percent": max(0, min(100, progress_percent)),
        })

    async def record_probe(
        self,
        source_file_id: int,
        job_token: str,
        duration_seconds: float,
        codec_video: str,
        bitrate: Optional[str],
        width: Optional[int],
        height: Optional[int],
    ) -> bool:
        return await self._owned_update(source_file_id, job_token, {
            "duration_seconds": duration_seconds,
            "codec_video": codec_video,
            "bitrate": bitrate,
            "width": width,
            "height": height,
        })

    async def mark_completed(
        self,
        source_file_id: int,
        job_token: str,
        status: MediaStatus = MediaStatus.COMPLETED,
        error_message: Optional[str] = None,
    ) -> bool:
        return await self._owned_update(source_file_id, job_token, {
            "status": status.value,
            "stage": JobStage.DONE.value,
            "progress_percent": 100,
            "error_message": truncate_error(error_message) if error_message else None,
            "next_retry_at": None,
            "processing_completed_at": _utcnow(),
        })

    async def mark_retry_scheduled(
        self,
        source_file_id: int,
        job_token: str,
        error_message: str,
        next_retry_at: datetime,
    ) -> bool:
        """Record a failed attempt that will be retried at ``next_retry_at``."""
        return await self._owned_update(source_file_id, job_token, {
            "status": MediaStatus.FAILED.value,
            "stage": JobStage.FAILED.value,
            "error_message": truncate_error(error_message),
            "next_retry_at": next_retry_at,
        })

    async def mark_failed(self, source_file_id: int, job_token: str, error_message: str) -> bool:
        """Record a terminal failure. No automatic retry follows."""
        return await self._owned_update(source_file_id, job_token, {
            "status": MediaStatus.FAILED.value,
            "stage": JobStage.FAILED.value,
            "error_message": truncate_error(error_message),
            "next_retry_at": None,
            "processing_completed_at": _utcnow(),
        })

    async def _owned_update(
        self,
        source_file_id: int,
        job_token: str,
        values: dict,
        statuses: tuple[str, ...] = (MediaStatus.PROCESSING.value,),
    ) -> bool:
        result = await self.session.execute(
            update(SourceFile)
            .where(
                and_(
                    SourceFile.id == source_file_id,
                    SourceFile.job_token == job_token,
                    SourceFile.status.in_(statuses),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class RenditionRepository:
    """Repository for Rendition operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(
        self,
        source_file_id: int,
        name: str,
        width: int,
        height: int,
        bitrate_kbps: int,
        codec_video: str,
        codec_audio: str,
        format: str,
    ) -> Rendition:
        """Get or create the rendition for (source_file_id, name).

        Profile attributes are refreshed on an existing row; its status is
        left alone.
        """
        result = await self.session.execute(
            select(Rendition).where(
                and_(Rendition.source_file_id == source_file_id, Rendition.name == name)
            ).execution_options(populate_existing=True)
        )
        rendition = result.scalar_one_or_none()

        if rendition is None:
            rendition = Rendition(
                source_file_id=source_file_id,
                name=name,
                status=MediaStatus.PENDING.value,
            )
            self.session.add(rendition)

        rendition.width = width
        rendition.height = height
        rendition.bitrate_kbps = bitrate_kbps
        rendition.codec_video = codec_video
        rendition.codec_audio = codec_audio
        rendition.format = format

        await self.session.flush()
        return rendition

    async def mark_processing(self, rendition_id: int) -> None:
        """pending|failed -> processing. Completed renditions stay completed."""
        await self.session.execute(
            update(Rendition)
            .where(
                and_(
                    Rendition.id == rendition_id,
                    Rendition.status != MediaStatus.COMPLETED.value,
                )
            )
            .values(
                status=MediaStatus.PROCESSING.value,
                error_message=None,
                processing_started_at=_utcnow(),
                processing_completed_at=None,
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_completed(self, rendition_id: int, file_size_bytes: Optional[int] = None) -> None:
        await self.session.execute(
            update(Rendition)
            .where(Rendition.id == rendition_id)
            .values(
                status=MediaStatus.COMPLETED.value,
                error_message=None,
                file_size_bytes=file_size_bytes,
                processing_completed_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, rendition_id: int, error_message: str) -> None:
        """processing -> failed. Completed renditions stay completed."""
        await self.session.execute(
            update(Rendition)
            .where(
                and_(
                    Rendition.id == rendition_id,
                    Rendition.status != MediaStatus.COMPLETED.value,
                )
            )
            .values(
                status=MediaStatus.FAILED.value,
                error_message=truncate_error(error_message),
                processing_completed_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def record_published(self, rendition_id: int, storage_key: str, file_size_bytes: int) -> None:
        await self.session.execute(
            update(Rendition)
            .where(Rendition.id == rendition_id)
            .values(storage_key=storage_key, file_size_bytes=file_size_bytes)
            .execution_options(synchronize_session=False)
        )

    async def fail_in_flight(self, source_file_id: int, error_message: str) -> int:
        """Fail every rendition of a source file still marked processing."""
        result = await self.session.execute(
            update(Rendition)
            .where(
                and_(
                    Rendition.source_file_id == source_file_id,
                    Rendition.status == MediaStatus.PROCESSING.value,
                )
            )
            .values(
                status=MediaStatus.FAILED.value,
                error_message=truncate_error(error_message),
                processing_completed_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_by_source_file(self, source_file_id: int) -> list[Rendition]:
        result = await self.session.execute(
            select(Rendition)
            .where(Rendition.source_file_id == source_file_id)
            .order_by(Rendition.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
