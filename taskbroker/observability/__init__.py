"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from taskbroker.observability.logging import bind_context, setup_logging
from taskbroker.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from taskbroker.observability.tracing import (
    get_tracer,
    inject_trace_headers,
    setup_tracing,
    task_span,
    trace_context_from_headers,
)

__all__ = [
    "setup_logging",
    "bind_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "task_span",
    "inject_trace_headers",
    "trace_context_from_headers",
]
