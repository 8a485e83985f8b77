"""OpenTelemetry Distributed Tracing for Epimetheus.

This module provides:
- Tracing of fan-out calls to the node agents
- OTLP and console exporters
- A decorator for instrumenting coroutines

Usage:
    from epimetheus.tracing import setup_tracing, traced_async

    # Setup once at application start
    setup_tracing(service_name="epimetheus", exporter="otlp")

    @traced_async("fanout.invoke")
    async def invoke(...):
        span = get_current_span()
        span.set_attribute("fanout.operation", "ServiceList")

Environment Variables:
    OTEL_EXPORTER: Exporter type (otlp, console, none)
    OTEL_SERVICE_NAME: Service name for tracing
    OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL
    OTEL_TRACING_ENABLED: Enable/disable tracing (default: true)

When tracing is not set up, decorated coroutines run without opening a span.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import Any, Callable, Dict, Optional, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import SpanKind, Status, StatusCode

logger = logging.getLogger(__name__)

__all__ = [
    "get_current_span",
    "get_tracer",
    "is_tracing_enabled",
    "setup_tracing",
    "shutdown_tracing",
    "traced_async",
]

F = TypeVar('F', bound=Callable[..., Any])

TRACER_NAME = "epimetheus"

_tracer_provider: Optional[TracerProvider] = None
_tracing_enabled: bool = False


def is_tracing_enabled() -> bool:
    """Check if tracing is enabled."""
    return _tracing_enabled


def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the global provider."""
    return trace.get_tracer(name)


def get_current_span() -> trace.Span:
    """Get the current active span (non-recording when tracing is off)."""
    return trace.get_current_span()


def setup_tracing(
    service_name: str = "epimetheus",
    exporter: str = "none",
    otlp_endpoint: Optional[str] = None,
) -> bool:
    """Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service for tracing
        exporter: Exporter type ("otlp", "console", "none")
        otlp_endpoint: OTLP endpoint URL (default from env)

    Returns:
        True if tracing was successfully set up
    """
    global _tracer_provider, _tracing_enabled

    env_enabled = os.getenv("OTEL_TRACING_ENABLED", "true").lower()
    if env_enabled in ("false", "0", "no"):
        logger.info("Tracing disabled via OTEL_TRACING_ENABLED")
        _tracing_enabled = False
        return False

    exporter = os.getenv("OTEL_EXPORTER", exporter)
    service_name = os.getenv("OTEL_SERVICE_NAME", service_name)

    if exporter == "none":
        logger.debug("Tracing exporter set to 'none', tracing disabled")
        _tracing_enabled = False
        return False

    span_processor = _create_span_processor(exporter, otlp_endpoint)
    if span_processor is None:
        logger.warning(f"Failed to create span processor for exporter: {exporter}")
        _tracing_enabled = False
        return False

    resource = Resource.create({SERVICE_NAME: service_name})
    _tracer_provider = TracerProvider(resource=resource)
    _tracer_provider.add_span_processor(span_processor)
    trace.set_tracer_provider(_tracer_provider)
    _tracing_enabled = True

    logger.info(
        f"OpenTelemetry tracing initialized: "
        f"service={service_name}, exporter={exporter}"
    )
    return True


def _create_span_processor(
    exporter: str,
    otlp_endpoint: Optional[str],
) -> Optional[BatchSpanProcessor]:
    """Create span processor based on exporter type."""
    if exporter == "console":
        return BatchSpanProcessor(ConsoleSpanExporter())

    elif exporter == "otlp":
        endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if not endpoint:
            logger.warning("OTLP endpoint not configured, falling back to console")
            return BatchSpanProcessor(ConsoleSpanExporter())
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))

    else:
        logger.warning(f"Unknown exporter type: {exporter}")
        return None


def shutdown_tracing() -> None:
    """Shutdown tracing and flush any pending spans."""
    global _tracer_provider, _tracing_enabled

    if _tracer_provider is not None:
        _tracer_provider.shutdown()

    _tracer_provider = None
    _tracing_enabled = False


def traced_async(
    span_name: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
    kind: SpanKind = SpanKind.INTERNAL,
) -> Callable[[F], F]:
    """Decorator to trace a coroutine function.

    Args:
        span_name: Name for the span (default: function name)
        attributes: Static attributes to add to span
        kind: Span kind (default: INTERNAL)
    """
    def decorator(func: F) -> F:
        name = span_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not is_tracing_enabled():
                return await func(*args, **kwargs)

            tracer = get_tracer()
            with tracer.start_as_current_span(
                name, kind=kind, record_exception=False, set_status_on_exception=False
            ) as span:
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, value)

                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise
                error = getattr(result, "error", None)
                if error is not None:
                    span.set_status(Status(StatusCode.ERROR, str(error)))
                else:
                    span.set_status(Status(StatusCode.OK))
                return result

        return wrapper  # type: ignore

    return decorator
