"""Direct-upload issuance and verification.

Clients never stream media through this service. They ask for an upload
grant, PUT the file straight to object storage, then report the storage key
back so it can be verified, registered as a SourceFile and handed to the
transcode pipeline.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from streamvault.core.config import settings
from streamvault.core.exceptions import (
    InvalidStorageKey,
    NotFoundReference,
    ObjectEmpty,
    ObjectNotFound,
    UnsupportedFileType,
    UploadError,
)
from streamvault.core.logging import log_info, log_warning
from streamvault.core.metrics import UPLOAD_GRANTS_TOTAL, UPLOAD_VERIFICATIONS_TOTAL
from streamvault.core.storage import Storage, get_storage
from streamvault.modules.media.keys import (
    ALLOWED_EXTENSIONS,
    build_upload_key,
    file_extension,
    mime_type_for,
    parse_upload_key,
)
from streamvault.modules.media.models import MediaStatus
from streamvault.modules.media.repository import AssetRepository, SourceFileRepository
from streamvault.modules.media.schemas import AssetResponse
from streamvault.modules.transcoding.service import TranscodeDispatcher
from streamvault.modules.upload.schemas import (
    CompleteUploadResult,
    InitiatedUpload,
    UploadGrant,
    VerifiedUpload,
    format_bytes,
)

logger = logging.getLogger(__name__)

_GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


class UploadService:
    """Issues upload grants and turns finished uploads into SourceFiles."""

    def __init__(
        self,
        session: AsyncSession,
        storage: Optional[Storage] = None,
        dispatcher: Optional[TranscodeDispatcher] = None,
    ):
        """Initialize service with database session.

        Args:
            session: Database session
            storage: Object store gateway, defaults to the configured backend
            dispatcher: Transcode dispatcher used by complete_upload
        """
        self.session = session
        self.storage = storage or get_storage()
        self.dispatcher = dispatcher or TranscodeDispatcher(session)
        self.asset_repo = AssetRepository(session)
        self.source_file_repo = SourceFileRepository(session)

    @property
    def url_ttl_seconds(self) -> int:
        return settings.UPLOAD_URL_TTL_MINUTES * 60

    # ==================== Issuance ====================

    async def issue_upload(self, asset_id: int, filename: str) -> UploadGrant:
        """Create a pre-signed PUT grant for a new object under an asset.

        The key is ``videos/uploads/<asset-id>/<uuid4>.<ext>``; only the
        extension is taken from the client filename. Nothing is persisted.

        Args:
            asset_id: Existing asset the upload belongs to
            filename: Client filename, used for its extension only

        Returns:
            UploadGrant with URL, expiry, key and required headers

        Raises:
            UnsupportedFileType: If the extension is not an allowed video type
            NotFoundReference: If the asset does not exist
            GatewayUnavailable: If the store cannot presign
        """
        extension = file_extension(filename)
        if extension not in ALLOWED_EXTENSIONS:
            raise UnsupportedFileType(filename, ALLOWED_EXTENSIONS)

        if await self.asset_repo.get_by_id(asset_id) is None:
            raise NotFoundReference("Asset", asset_id)

        storage_key = build_upload_key(asset_id, extension)
        headers = {"Content-Type": mime_type_for(extension)}
        ttl = self.url_ttl_seconds
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)

        url = self.storage.presigned_upload(storage_key, ttl, headers)

        UPLOAD_GRANTS_TOTAL.inc()
        log_info(logger, "Upload grant issued", asset_id=asset_id, storage_key=storage_key)

        return UploadGrant(
            url=url,
            expires_at=expires_at,
            storage_key=storage_key,
            method="PUT",
            headers=headers,
        )

    async def initiate_upload(
        self,
        owner_id: int,
        title: str,
        filename: str = "video.mp4",
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> InitiatedUpload:
        """Create an unpublished asset and issue its first upload grant."""
        if file_extension(filename) not in ALLOWED_EXTENSIONS:
            raise UnsupportedFileType(filename, ALLOWED_EXTENSIONS)

        asset = await self.asset_repo.create(
            owner_id=owner_id,
            title=title,
            description=description,
            tags=tags or [],
        )
        await self.session.commit()

        grant = await self.issue_upload(asset.id, filename)
        return InitiatedUpload(asset=AssetResponse.model_validate(asset), upload=grant)

    # ==================== Verification ====================

    async def _check_key(self, storage_key: str, asset_id: Optional[int]) -> str:
        """Apply the upload key policy. Runs before any store call."""
        key = storage_key.strip()
        parsed = parse_upload_key(key)

        if asset_id is not None and parsed.asset_id != asset_id:
            raise InvalidStorageKey(storage_key, f"key belongs to asset {parsed.asset_id}, not {asset_id}")

        if await self.asset_repo.get_by_id(parsed.asset_id) is None:
            raise InvalidStorageKey(storage_key, f"asset {parsed.asset_id} does not exist")

        return key

    async def verify_upload(self, storage_key: str, asset_id: Optional[int] = None) -> VerifiedUpload:
        """Confirm an uploaded object exists and is non-empty.

        Advisory only: nothing is written.

        Args:
            storage_key: Key from the upload grant
            asset_id: Caller's asset; the key must belong to it

        Returns:
            VerifiedUpload with size and MIME type

        Raises:
            InvalidStorageKey: If the key violates the upload key policy
            ObjectNotFound: If nothing was uploaded under the key
            ObjectEmpty: If the object has zero length
            GatewayUnavailable: If the store cannot be reached
        """
        try:
            key = await self._check_key(storage_key, asset_id)
            size = self.storage.size(key)
            if size <= 0:
                raise ObjectEmpty(key)
        except InvalidStorageKey:
            UPLOAD_VERIFICATIONS_TOTAL.labels(result="invalid_key").inc()
            raise
        except ObjectNotFound:
            UPLOAD_VERIFICATIONS_TOTAL.labels(result="not_found").inc()
            raise
        except ObjectEmpty:
            UPLOAD_VERIFICATIONS_TOTAL.labels(result="empty").inc()
            raise
        except UploadError:
            UPLOAD_VERIFICATIONS_TOTAL.labels(result="unavailable").inc()
            raise

        parsed = parse_upload_key(key)
        content_type = self.storage.content_type(key) or ""
        if content_type.lower() in _GENERIC_CONTENT_TYPES:
            content_type = mime_type_for(parsed.extension)

        UPLOAD_VERIFICATIONS_TOTAL.labels(result="ok").inc()
        return VerifiedUpload(
            storage_key=key,
            asset_id=parsed.asset_id,
            file_size_bytes=size,
            mime_type=content_type,
        )

    async def verify_and_register(
        self,
        asset_id: int,
        storage_key: str,
        original_filename: Optional[str] = None,
    ) -> int:
        """Verify an upload and record it as a pending SourceFile.

        Idempotent per storage key: completing the same key twice returns the
        same SourceFile id, including when two calls race on the insert.

        Returns:
            SourceFile id
        """
        key = storage_key.strip()
        parsed = parse_upload_key(key)
        if parsed.asset_id != asset_id:
            raise InvalidStorageKey(storage_key, f"key belongs to asset {parsed.asset_id}, not {asset_id}")

        existing = await self.source_file_repo.get_by_storage_key(key)
        if existing is not None:
            return existing.id

        verified = await self.verify_upload(key, asset_id)

        try:
            source_file = await self.source_file_repo.create(
                asset_id=asset_id,
                storage_key=verified.storage_key,
                file_size_bytes=verified.file_size_bytes,
                mime_type=verified.mime_type,
                original_filename=original_filename,
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.source_file_repo.get_by_storage_key(key)
            if existing is None:
                raise
            log_warning(logger, "Concurrent upload registration resolved to existing row", storage_key=key)
            return existing.id

        log_info(
            logger,
            "Upload registered",
            asset_id=asset_id,
            source_file_id=source_file.id,
            file_size_bytes=verified.file_size_bytes,
        )
        return source_file.id

    async def complete_upload(
        self,
        asset_id: int,
        storage_key: str,
        original_filename: Optional[str] = None,
    ) -> CompleteUploadResult:
        """Verify, register and start transcoding an upload.

        A SourceFile that already left pending is reported as-is without a
        second dispatch.
        """
        source_file_id = await self.verify_and_register(asset_id, storage_key, original_filename)

        source_file = await self.source_file_repo.get_by_id(source_file_id)
        dispatched = False
        if source_file.status == MediaStatus.PENDING.value:
            await self.dispatcher.enqueue_transcode(source_file_id)
            source_file = await self.source_file_repo.get_by_id(source_file_id)
            dispatched = True

        return CompleteUploadResult(
            asset_id=asset_id,
            source_file_id=source_file_id,
            storage_key=source_file.storage_key,
            status=source_file.status,
            file_size_bytes=source_file.file_size_bytes,
            file_size=format_bytes(source_file.file_size_bytes),
            mime_type=source_file.mime_type,
            job_dispatched=dispatched,
        )
