"""OpenTelemetry tracing for transcode jobs.

A worker process configures one tracer provider at startup. Each transcode
attempt opens a ``transcode.attempt`` span and every pipeline stage a child
span, so a slow or failing stage shows up in the trace of the job that owns it.
Until ``setup_tracing`` runs, spans are no-ops.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "streamvault"

_provider: Optional[TracerProvider] = None


def _span_processors(otlp_endpoint: Optional[str], console: bool) -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    if otlp_endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    if console:
        # Console output is for local debugging, flush immediately
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> TracerProvider:
    """Install the process-wide tracer provider.

    Args:
        service_name: Reported as ``service.name``
        service_version: Reported as ``service.version``
        environment: Reported as ``deployment.environment``
        otlp_endpoint: gRPC collector endpoint; spans are only exported when set
        enable_console_export: Also print finished spans to stdout

    Returns:
        The installed provider
    """
    global _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    })
    provider = TracerProvider(resource=resource)
    for processor in _span_processors(otlp_endpoint, enable_console_export):
        provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)
    _provider = provider

    logger.info(
        "Tracing initialized",
        extra={"service": service_name, "otlp_endpoint": otlp_endpoint or "disabled"},
    )
    return provider


def shutdown_tracing() -> None:
    """Flush pending spans and shut the provider down."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def current_trace_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex trace and span IDs of the active span, or (None, None)."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


@contextmanager
def create_span(name: str, attributes: Optional[dict] = None) -> Iterator[Span]:
    """Run the block inside a child span of the current one.

    Exceptions leaving the block are recorded on the span by OpenTelemetry
    and re-raised.
    """
    tracer = trace.get_tracer(INSTRUMENTATION_NAME)
    with tracer.start_as_current_span(name, attributes=attributes or {}) as span:
        yield span


def record_exception(exception: BaseException, attributes: Optional[dict] = None) -> None:
    """Attach an exception to the current span and mark the span failed."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    span.record_exception(exception, attributes=attributes)
    span.set_status(Status(StatusCode.ERROR, str(exception)))
