"""OpenTelemetry tracing setup and span helpers."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

_tracer: Optional[trace.Tracer] = None
_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Install a tracer provider for the process.

    Args:
        service_name: Name reported on every span
        service_version: Version reported on every span
        environment: Deployment environment
        otlp_endpoint: OTLP collector endpoint; requires the OTLP exporter package
        enable_console_export: Print finished spans to stdout

    Returns:
        Configured tracer instance
    """
    global _tracer, _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    })
    _provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        # The exporter is an optional extra; tracing still works without it
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTLP exporter not installed, spans will not be exported")
        else:
            _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            logger.info(f"OTLP tracing enabled, exporting to {otlp_endpoint}")

    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(service_name, service_version)
    logger.info(f"Tracing initialized for {service_name} v{service_version}")
    return _tracer


def get_tracer() -> trace.Tracer:
    """Return the configured tracer, or a no-op tracer before setup."""
    if _tracer is None:
        return trace.get_tracer(__name__)
    return _tracer


def get_trace_id() -> Optional[str]:
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().trace_id, "032x")
    return None


def get_span_id() -> Optional[str]:
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().span_id, "016x")
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Start a span as the current span for the duration of the block."""
    with get_tracer().start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        yield span


def record_exception(exception: Exception) -> None:
    """Record an exception on the current span and mark it as errored."""
    span = trace.get_current_span()
    if span:
        span.record_exception(exception)
        span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and shut the provider down."""
    if _provider:
        _provider.shutdown()
        logger.info("Tracing shutdown complete")
