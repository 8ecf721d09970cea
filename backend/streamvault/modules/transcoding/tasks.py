"""Celery tasks for transcoding.

One task execution is one attempt. Retries are Celery retries with the
countdown chosen by the orchestrator, so the delay recorded on the
SourceFile (next_retry_at) and the actual redelivery agree.
"""

import logging
from typing import Any

from celery.exceptions import SoftTimeLimitExceeded

from streamvault.core.celery_app import celery_app
from streamvault.core.config import settings
from streamvault.core.database import async_session_maker
from streamvault.core.exceptions import NotFoundReference, RetryableTranscodeError
from streamvault.core.logging import clear_correlation_id, log_error
from streamvault.core.storage import get_storage
from streamvault.modules.job.tasks import BaseTaskWithRetry, run_async
from streamvault.modules.transcoding.pipeline import (
    AttemptOutcome,
    AttemptResult,
    TranscodeOrchestrator,
)
from streamvault.modules.transcoding.runner import SubprocessToolRunner

logger = logging.getLogger(__name__)


class TranscodeTask(BaseTaskWithRetry):
    """Base task for transcode attempts."""

    abstract = True
    retry_config_name = "transcode"
    acks_late = True
    soft_time_limit = int(settings.TRANSCODE_JOB_TIMEOUT_SECONDS)
    time_limit = int(settings.TRANSCODE_JOB_TIMEOUT_SECONDS) + 300

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        log_error(
            logger,
            "Transcode task failed",
            exception=exc,
            task_id=task_id,
            source_file_id=args[0] if args else kwargs.get("source_file_id"),
        )


def build_orchestrator(task: TranscodeTask) -> TranscodeOrchestrator:
    return TranscodeOrchestrator(
        session_maker=async_session_maker,
        storage=get_storage(),
        runner=SubprocessToolRunner(),
        retry_config=task.retry_config,
        timeout_errors=(SoftTimeLimitExceeded,),
    )


async def _run_attempt(task: TranscodeTask, source_file_id: int, job_token: str, attempt: int) -> AttemptResult:
    try:
        return await build_orchestrator(task).run_attempt(source_file_id, job_token, attempt)
    finally:
        clear_correlation_id()


@celery_app.task(bind=True, base=TranscodeTask, name="streamvault.transcoding.transcode_source_file")
def transcode_source_file_task(self: TranscodeTask, source_file_id: int, job_token: str) -> dict:
    """Run one transcode attempt for a SourceFile.

    Args:
        source_file_id: SourceFile to transcode
        job_token: Token issued when the job was dispatched

    Returns:
        dict: Attempt outcome
    """
    attempt = self.current_attempt
    try:
        result = run_async(_run_attempt(self, source_file_id, job_token, attempt))
    except NotFoundReference as e:
        # Nothing to record on; the row is gone
        log_error(logger, "Transcode target missing", exception=e, source_file_id=source_file_id)
        return {"source_file_id": source_file_id, "outcome": AttemptOutcome.FAILED.value, "error": str(e)}

    if result.outcome == AttemptOutcome.RETRY_SCHEDULED:
        self.retry_with_backoff(
            RetryableTranscodeError(result.error or "transcode attempt failed"),
            attempt,
            countdown=result.retry_delay,
        )

    return {
        "source_file_id": source_file_id,
        "outcome": result.outcome.value,
        "attempt": result.attempt,
        "renditions": list(result.renditions),
        "failed_renditions": list(result.failed_renditions),
        "thumbnail_key": result.thumbnail_key,
        "error": result.error,
    }
