"""Background job support: Celery task base classes and retry policy."""

from streamvault.modules.job.tasks import RETRY_CONFIGS, BaseTaskWithRetry, RetryConfig, run_async

__all__ = [
    "RETRY_CONFIGS",
    "BaseTaskWithRetry",
    "RetryConfig",
    "run_async",
]
