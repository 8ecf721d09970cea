"""Tests for structured logging, tracing and metrics helpers.

**Feature: media-ingest, Property 16: Job Correlation**
**Validates: Requirements 7.1, 7.2**
"""

import json
import logging

import pytest
from hypothesis import given, settings, strategies as st

from streamvault.core.exceptions import MAX_ERROR_MESSAGE_LENGTH, truncate_error
from streamvault.core.logging import (
    StructuredFormatter,
    bind_job,
    clear_correlation_id,
    get_correlation_id,
    log_warning,
    set_correlation_id,
)
from streamvault.core.metrics import TRANSCODE_JOBS_TOTAL, get_metrics


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def captured():
    logger = logging.getLogger("streamvault.test")
    handler = _Capture()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        yield logger, handler
    finally:
        logger.removeHandler(handler)
        clear_correlation_id()


class TestStructuredFormatter:
    """Tests for the JSON log format."""

    def test_job_token_is_correlation_id(self, captured) -> None:
        """**Feature: media-ingest, Property 16: Job Correlation**"""
        logger, handler = captured
        set_correlation_id("job-token-123")

        log_warning(logger, "Rendition failed", source_file_id=7, profile="480p")

        payload = json.loads(StructuredFormatter().format(handler.records[0]))
        assert payload["level"] == "WARNING"
        assert payload["message"] == "Rendition failed"
        assert payload["correlation_id"] == "job-token-123"
        assert payload["extra"]["source_file_id"] == 7
        assert payload["extra"]["profile"] == "480p"

    def test_bound_job_included(self, captured) -> None:
        """**Feature: media-ingest, Property 16: Job Correlation**"""
        logger, handler = captured
        bind_job("job-token-456", source_file_id=9, attempt=2)

        log_warning(logger, "Probe failed")

        payload = json.loads(StructuredFormatter().format(handler.records[0]))
        assert payload["correlation_id"] == "job-token-456"
        assert payload["job"] == {"source_file_id": 9, "attempt": 2}

    def test_exception_details_included(self, captured) -> None:
        logger, handler = captured
        try:
            raise ValueError("bad probe output")
        except ValueError:
            logger.exception("Probe failed")

        payload = json.loads(StructuredFormatter().format(handler.records[0]))
        assert payload["exception"]["type"] == "ValueError"
        assert payload["exception"]["message"] == "bad probe output"

    def test_generated_correlation_id_is_stable(self) -> None:
        clear_correlation_id()
        try:
            assert get_correlation_id() == get_correlation_id()
        finally:
            clear_correlation_id()


class TestErrorTruncation:
    """Stored error messages are bounded."""

    @given(message=st.text(max_size=MAX_ERROR_MESSAGE_LENGTH * 2))
    @settings(max_examples=100)
    def test_truncated_to_limit(self, message: str) -> None:
        truncated = truncate_error(message)

        assert len(truncated) <= MAX_ERROR_MESSAGE_LENGTH
        if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
            assert truncated == message
        else:
            assert truncated.endswith("...")


class TestMetrics:
    """Tests for the Prometheus registry."""

    def test_exposition_includes_transcode_counters(self) -> None:
        TRANSCODE_JOBS_TOTAL.labels(outcome="completed").inc()

        output = get_metrics().decode()

        assert "transcode_jobs_total" in output
        assert "upload_grants_total" in output
