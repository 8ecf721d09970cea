"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from streamvault.core.config import settings

celery_app = Celery(
    "streamvault",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Hard limit sits past the job deadline so the soft limit fires first
    task_soft_time_limit=int(settings.TRANSCODE_JOB_TIMEOUT_SECONDS),
    task_time_limit=int(settings.TRANSCODE_JOB_TIMEOUT_SECONDS) + 300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

celery_app.autodiscover_tasks(["streamvault.modules.transcoding"])


@worker_process_init.connect
def init_worker_process(**kwargs) -> None:
    """Logging, tracing and app info for each pool process."""
    from streamvault.core.logging import setup_logging
    from streamvault.core.metrics import set_app_info
    from streamvault.core.tracing import setup_tracing

    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
        enable_console_export=settings.TRACING_CONSOLE_EXPORT,
    )
    set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)


@worker_process_shutdown.connect
def shutdown_worker_process(**kwargs) -> None:
    from streamvault.core.tracing import shutdown_tracing

    shutdown_tracing()
