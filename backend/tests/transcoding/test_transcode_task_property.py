"""Tests for the Celery transcode task.

**Feature: media-ingest, Property 9: Bounded Retries**
**Validates: Requirements 5.3, 5.4**
"""

import pytest

from streamvault.core.config import settings
from streamvault.core.exceptions import NotFoundReference, RetryableTranscodeError
from streamvault.modules.transcoding import tasks as transcode_tasks
from streamvault.modules.transcoding.pipeline import AttemptOutcome, AttemptResult
from streamvault.modules.transcoding.tasks import transcode_source_file_task


class RetryRequested(Exception):
    """Raised by the patched Task.retry so the test can inspect the call."""

    def __init__(self, exc, countdown):
        self.exc = exc
        self.countdown = countdown
        super().__init__(f"retry in {countdown}s")


def _fake_attempt(result=None, error=None):
    calls = []

    async def run(task, source_file_id, job_token, attempt):
        calls.append((source_file_id, job_token, attempt))
        if error is not None:
            raise error
        return result

    return run, calls


@pytest.fixture
def patched_retry(monkeypatch):
    def retry(exc=None, countdown=None, **kwargs):
        return RetryRequested(exc, countdown)

    monkeypatch.setattr(transcode_source_file_task, "retry", retry)


class TestTranscodeTask:
    """Tests for transcode_source_file_task."""

    def test_task_configuration(self) -> None:
        assert transcode_source_file_task.name == "streamvault.transcoding.transcode_source_file"
        assert transcode_source_file_task.acks_late is True
        assert transcode_source_file_task.soft_time_limit == int(settings.TRANSCODE_JOB_TIMEOUT_SECONDS)
        assert transcode_source_file_task.time_limit > transcode_source_file_task.soft_time_limit
        assert transcode_source_file_task.retry_config.max_attempts == settings.TRANSCODE_MAX_ATTEMPTS

    def test_completed_attempt_returns_summary(self, monkeypatch) -> None:
        """**Feature: media-ingest, Property 6: Transcode Pipeline Completion**"""
        result = AttemptResult(
            outcome=AttemptOutcome.COMPLETED,
            source_file_id=5,
            attempt=1,
            renditions=("360p", "720p"),
            thumbnail_key="videos/thumbnails/5/thumbnail.jpg",
        )
        run, calls = _fake_attempt(result)
        monkeypatch.setattr(transcode_tasks, "_run_attempt", run)

        summary = transcode_source_file_task.run(5, "token-a")

        assert calls == [(5, "token-a", 1)]
        assert summary["outcome"] == "completed"
        assert summary["renditions"] == ["360p", "720p"]
        assert summary["thumbnail_key"] == "videos/thumbnails/5/thumbnail.jpg"

    def test_scheduled_retry_uses_orchestrator_delay(self, monkeypatch, patched_retry) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**"""
        result = AttemptResult(
            outcome=AttemptOutcome.RETRY_SCHEDULED,
            source_file_id=5,
            attempt=1,
            error="480p: ffmpeg exited with status 1",
            retry_delay=60,
        )
        run, _ = _fake_attempt(result)
        monkeypatch.setattr(transcode_tasks, "_run_attempt", run)

        with pytest.raises(RetryRequested) as exc_info:
            transcode_source_file_task.run(5, "token-a")

        assert exc_info.value.countdown == 60
        assert isinstance(exc_info.value.exc, RetryableTranscodeError)
        assert "480p" in str(exc_info.value.exc)

    def test_attempt_number_follows_celery_retries(self, monkeypatch, patched_retry) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**"""
        result = AttemptResult(outcome=AttemptOutcome.FAILED, source_file_id=5, attempt=3, error="boom")
        run, calls = _fake_attempt(result)
        monkeypatch.setattr(transcode_tasks, "_run_attempt", run)

        transcode_source_file_task.push_request(retries=2)
        try:
            summary = transcode_source_file_task.run(5, "token-a")
        finally:
            transcode_source_file_task.pop_request()

        assert calls == [(5, "token-a", 3)]
        assert summary["outcome"] == "failed"
        assert summary["error"] == "boom"

    def test_retry_past_budget_refused(self, monkeypatch, patched_retry) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**"""
        result = AttemptResult(
            outcome=AttemptOutcome.RETRY_SCHEDULED, source_file_id=5, attempt=3, retry_delay=900
        )
        run, _ = _fake_attempt(result)
        monkeypatch.setattr(transcode_tasks, "_run_attempt", run)

        transcode_source_file_task.push_request(retries=settings.TRANSCODE_MAX_ATTEMPTS - 1)
        try:
            with pytest.raises(transcode_source_file_task.MaxRetriesExceededError):
                transcode_source_file_task.run(5, "token-a")
        finally:
            transcode_source_file_task.pop_request()

    def test_missing_source_file_is_not_retried(self, monkeypatch, patched_retry) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**"""
        run, _ = _fake_attempt(error=NotFoundReference("SourceFile", 5))
        monkeypatch.setattr(transcode_tasks, "_run_attempt", run)

        summary = transcode_source_file_task.run(5, "token-a")

        assert summary["outcome"] == "failed"
        assert "SourceFile 5 not found" in summary["error"]
