"""
TutorMeter - Observability Module

- Prometheus metrics for sessions, tokens, cost, quota denials and store errors
- OpenTelemetry tracing with W3C trace context propagation
- Structured JSON logging with context injection

Usage:
    from tutormeter.observability import setup_observability, get_metrics, get_logger

    setup_observability(service_name="tutormeter")

    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    get_tracing_manager,
    setup_tracing,
    trace_operation,
)
from .logging import (
    StructuredLogger,
    TimedOperation,
    get_logger,
    setup_logging,
    LogContext,
)
from .middleware import (
    ObservabilityMiddleware,
    setup_observability,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    # Tracing
    "TracingManager",
    "get_tracing_manager",
    "setup_tracing",
    "trace_operation",
    # Logging
    "StructuredLogger",
    "TimedOperation",
    "get_logger",
    "setup_logging",
    "LogContext",
    # Combined
    "ObservabilityMiddleware",
    "setup_observability",
]
