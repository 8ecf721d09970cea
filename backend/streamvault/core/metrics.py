"""Prometheus metrics for uploads and transcode jobs."""

import os

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Celery prefork workers write to a shared directory
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "streamvault_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Upload Metrics
# ============================================
UPLOAD_GRANTS_TOTAL = Counter(
    "upload_grants_total",
    "Pre-signed upload grants issued",
    registry=REGISTRY,
)

UPLOAD_VERIFICATIONS_TOTAL = Counter(
    "upload_verifications_total",
    "Upload verifications by result",
    ["result"],
    registry=REGISTRY,
)


# ============================================
# Transcode Metrics
# ============================================
TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Transcode attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

TRANSCODE_STAGE_DURATION_SECONDS = Histogram(
    "transcode_stage_duration_seconds",
    "Time spent in each transcode stage",
    ["stage"],
    buckets=[0.1, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0],
    registry=REGISTRY,
)

TOOL_INVOCATIONS_TOTAL = Counter(
    "media_tool_invocations_total",
    "External media tool invocations by tool and result",
    ["tool", "result"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
