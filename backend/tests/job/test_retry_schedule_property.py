"""Property-based tests for retry delay schedules.

**Feature: media-ingest, Property 9: Bounded Retries**
**Validates: Requirements 5.3**
"""

import asyncio
import math

from hypothesis import given, settings, strategies as st

from streamvault.core.config import Settings
from streamvault.modules.job.tasks import RETRY_CONFIGS, RetryConfig, run_async


class TestScheduledBackoff:
    """Property tests for explicit delay schedules."""

    def test_transcode_defaults(self) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**

        The transcode job SHALL wait 60s, then 300s, and give up after 3 attempts.
        """
        config = RETRY_CONFIGS["transcode"]

        assert config.max_attempts == 3
        assert config.calculate_delay(1) == 60
        assert config.calculate_delay(2) == 300
        assert [config.should_retry(a) for a in (1, 2, 3)] == [True, True, False]

    @given(
        schedule=st.lists(st.floats(min_value=1, max_value=3600), min_size=1, max_size=6),
        attempt=st.integers(min_value=1, max_value=50),
    )
    @settings(max_examples=100)
    def test_schedule_entry_per_attempt(self, schedule: list[float], attempt: int) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**

        Attempt n SHALL wait schedule[n-1], and the last entry repeats.
        """
        config = RetryConfig(max_attempts=100, schedule=schedule)

        expected = schedule[min(attempt, len(schedule)) - 1]
        assert config.calculate_delay(attempt) == expected

    @given(max_attempts=st.integers(min_value=1, max_value=20))
    @settings(max_examples=50)
    def test_attempt_budget(self, max_attempts: int) -> None:
        """**Feature: media-ingest, Property 9: Bounded Retries**"""
        config = RetryConfig(max_attempts=max_attempts, schedule=[60])

        retries = [a for a in range(1, max_attempts + 5) if config.should_retry(a)]
        assert retries == list(range(1, max_attempts))

    def test_backoff_setting_parsed(self) -> None:
        configured = Settings(TRANSCODE_RETRY_BACKOFF_SECONDS="30, 120,,600")

        assert configured.transcode_backoff_schedule == [30.0, 120.0, 600.0]


class TestExponentialBackoff:
    """Without a schedule the delay grows exponentially up to a cap."""

    @given(
        initial_delay=st.floats(min_value=0.1, max_value=10.0),
        max_delay=st.floats(min_value=10.0, max_value=1000.0),
        backoff_multiplier=st.floats(min_value=1.1, max_value=5.0),
        attempt=st.integers(min_value=1, max_value=20),
    )
    @settings(max_examples=100)
    def test_delay_follows_exponential_pattern(
        self, initial_delay: float, max_delay: float, backoff_multiplier: float, attempt: int
    ) -> None:
        config = RetryConfig(
            max_attempts=20,
            initial_delay=initial_delay,
            max_delay=max_delay,
            backoff_multiplier=backoff_multiplier,
        )
        expected = min(initial_delay * math.pow(backoff_multiplier, attempt - 1), max_delay)
        assert abs(config.calculate_delay(attempt) - expected) < 0.0001

    def test_default_config_starts_at_initial_delay(self) -> None:
        config = RETRY_CONFIGS["default"]

        assert config.calculate_delay(1) == config.initial_delay
        assert config.calculate_delay(0) == config.initial_delay


class TestRunAsync:
    """Tests for the worker event loop helper."""

    def test_loop_reused_between_calls(self) -> None:
        async def current_loop():
            return asyncio.get_running_loop()

        assert run_async(current_loop()) is run_async(current_loop())
