"""
OpenTelemetry tracing for task dispatch.

Spans follow a task across the broker: the publisher injects the W3C trace
context into the AMQP headers, and the consumer extracts it so the handler
span joins the publisher's trace. Trace headers are not covered by the
message signature.
"""

import logging
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import Any

from opentelemetry import context as otel_context
from opentelemetry import propagate, trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from taskbroker import __version__
from taskbroker.config import get_settings

logger = logging.getLogger(__name__)

MESSAGING_SYSTEM = "rabbitmq"

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(
    service_name: str | None = None,
    endpoint: str | None = None,
    enable_console_export: bool = False,
) -> Tracer:
    """
    Install a tracer provider exporting spans over OTLP/gRPC.

    Args:
        service_name: Reported service name. Defaults to ``otel_service_name``.
        endpoint: OTLP collector endpoint. Defaults to ``otel_exporter_otlp_endpoint``.
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()
    service_name = service_name or settings.otel_service_name
    endpoint = endpoint or settings.otel_exporter_otlp_endpoint

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "service.version": __version__,
                "messaging.system": MESSAGING_SYSTEM,
            }
        )
    )

    try:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )
    except Exception as e:
        logger.warning(
            f"OTLP exporter unavailable, spans will not be exported: {e}",
            extra={"endpoint": endpoint},
        )

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = provider.get_tracer(__name__, __version__)

    logger.info("Tracing enabled", extra={"service": service_name, "endpoint": endpoint})
    return _tracer


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Falls back to the global proxy tracer, which records nothing until a
    provider is installed by ``setup_tracing``.
    """
    if _tracer is None:
        return trace.get_tracer(__name__, __version__)
    return _tracer


@contextmanager
def task_span(
    name: str,
    task_id: str,
    queue: str | None = None,
    **attributes: Any,
) -> Iterator[Span]:
    """
    Open a span for one task operation with messaging attributes set.

    Exceptions raised inside the block are recorded on the span and
    re-raised.

    Args:
        name: Span name, e.g. ``publish_task``.
        task_id: Task id, reported as the message id.
        queue: Destination queue or queue key.
        **attributes: Extra span attributes; ``None`` values are skipped.
    """
    with get_tracer().start_as_current_span(name) as span:
        span.set_attribute("messaging.system", MESSAGING_SYSTEM)
        span.set_attribute("messaging.message.id", task_id)
        if queue is not None:
            span.set_attribute("messaging.destination.name", queue)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def inject_trace_headers(headers: MutableMapping[str, Any]) -> None:
    """Write the current trace context into outgoing message headers."""
    propagate.inject(headers)


@contextmanager
def trace_context_from_headers(headers: Mapping[str, Any]) -> Iterator[None]:
    """
    Make the trace context carried by incoming headers current.

    Header values may arrive as bytes from the AMQP client.
    """
    carrier = {
        key: value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        for key, value in headers.items()
        if isinstance(value, str | bytes)
    }
    token = otel_context.attach(propagate.extract(carrier))
    try:
        yield
    finally:
        otel_context.detach(token)
