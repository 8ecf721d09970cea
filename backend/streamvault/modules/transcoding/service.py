"""Service layer for dispatching transcodes and reading their status."""

import logging
import uuid
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from streamvault.core.exceptions import NotFoundReference, TranscodeAlreadyInProgress
from streamvault.core.logging import log_error, log_info
from streamvault.modules.media.repository import RenditionRepository, SourceFileRepository
from streamvault.modules.media.schemas import SourceFileStatusResponse
from streamvault.modules.transcoding.tasks import transcode_source_file_task

logger = logging.getLogger(__name__)

Enqueue = Callable[[int, str], None]


def celery_enqueue(source_file_id: int, job_token: str) -> None:
    """Send the first attempt of a transcode to the worker queue."""
    transcode_source_file_task.delay(source_file_id, job_token)


class TranscodeDispatcher:
    """Starts transcode jobs and exposes their progress."""

    def __init__(self, session: AsyncSession, enqueue: Optional[Enqueue] = None):
        """Initialize dispatcher with database session.

        Args:
            session: Database session
            enqueue: Hands (source_file_id, job_token) to the worker queue
        """
        self.session = session
        self.source_file_repo = SourceFileRepository(session)
        self.rendition_repo = RenditionRepository(session)
        self._enqueue = enqueue or celery_enqueue

    async def enqueue_transcode(self, source_file_id: int) -> str:
        """Claim a SourceFile for transcoding and queue the job.

        At most one job owns a SourceFile at a time: the claim is a single
        compare-and-set from pending (or failed with no live retry scheduled) to
        processing under a fresh job token.

        Args:
            source_file_id: SourceFile to transcode

        Returns:
            The job token identifying the new job

        Raises:
            NotFoundReference: If the SourceFile does not exist
            TranscodeAlreadyInProgress: If another job owns it
        """
        if await self.source_file_repo.get_by_id(source_file_id) is None:
            raise NotFoundReference("SourceFile", source_file_id)

        job_token = uuid.uuid4().hex
        if not await self.source_file_repo.claim_for_transcode(source_file_id, job_token):
            await self.session.rollback()
            raise TranscodeAlreadyInProgress(source_file_id)
        await self.session.commit()

        try:
            self._enqueue(source_file_id, job_token)
        except Exception as e:
            # Release the claim so the file can be dispatched again
            await self.source_file_repo.mark_failed(
                source_file_id, job_token, f"Could not enqueue transcode: {e}"
            )
            await self.session.commit()
            log_error(logger, "Failed to enqueue transcode", exception=e, source_file_id=source_file_id)
            raise

        log_info(logger, "Transcode dispatched", source_file_id=source_file_id, job_token=job_token)
        return job_token

    async def get_status(self, source_file_id: int) -> SourceFileStatusResponse:
        """Current stage, progress, error and renditions of a SourceFile.

        Raises:
            NotFoundReference: If the SourceFile does not exist
        """
        source_file = await self.source_file_repo.get_with_renditions(source_file_id)
        if source_file is None:
            raise NotFoundReference("SourceFile", source_file_id)
        return SourceFileStatusResponse.model_validate(source_file)
