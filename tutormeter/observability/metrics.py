"""
TutorMeter - Prometheus Metrics

Metrics collection with the Prometheus client library.

Metrics exposed:
- tutormeter_requests_total: Counter of HTTP requests by endpoint, method, status
- tutormeter_request_duration_seconds: Histogram of HTTP request latency
- tutormeter_sessions_total: Counter of sessions by outcome (created/finalized/abandoned/conflict)
- tutormeter_tokens_total: Counter of metered tokens by model, direction and channel
- tutormeter_cost_usd_total: Counter of metered cost in USD by model
- tutormeter_limit_denials_total: Counter of gate denials by limit kind
- tutormeter_duplicate_usage_events_total: Counter of usage reports dropped as duplicates
- tutormeter_store_errors_total: Counter of store failures by operation and kind
- tutormeter_transcript_messages_total: Counter of saved transcript messages by role

Usage:
    from tutormeter.observability.metrics import get_metrics, metrics_endpoint

    metrics = get_metrics()
    metrics.record_tokens(model="gpt-realtime", channel="metrics_api", input_tokens=100, output_tokens=50)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from decimal import Decimal
from typing import Optional, Union

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    One collector per registry; get_metrics() returns the process-wide one.
    """

    _instance: Optional["MetricsCollector"] = None

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.info = Info(
            "tutormeter",
            "TutorMeter service information",
            registry=registry,
        )
        self.info.info({
            "service": "tutormeter",
        })

        self.requests_total = Counter(
            "tutormeter_requests_total",
            "Total number of HTTP requests",
            labelnames=["endpoint", "method", "status", "error_code"],
            registry=registry,
        )

        self.request_duration = Histogram(
            "tutormeter_request_duration_seconds",
            "HTTP request duration in seconds",
            labelnames=["endpoint", "method"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, float("inf")),
            registry=registry,
        )

        self.sessions_total = Counter(
            "tutormeter_sessions_total",
            "Session lifecycle transitions",
            labelnames=["model", "outcome"],
            registry=registry,
        )

        self.tokens_total = Counter(
            "tutormeter_tokens_total",
            "Total metered tokens",
            labelnames=["model", "type", "channel"],  # type = input/output
            registry=registry,
        )

        self.cost_total = Counter(
            "tutormeter_cost_usd_total",
            "Total metered cost in USD",
            labelnames=["model"],
            registry=registry,
        )

        self.limit_denials = Counter(
            "tutormeter_limit_denials_total",
            "Requests denied by the monthly quota gate",
            labelnames=["limit_type", "reason"],  # limit_type = tokens/sessions
            registry=registry,
        )

        self.duplicate_usage_events = Counter(
            "tutormeter_duplicate_usage_events_total",
            "Usage reports ignored because their event key was already applied",
            labelnames=["channel"],
            registry=registry,
        )

        self.store_errors = Counter(
            "tutormeter_store_errors_total",
            "Store operations that timed out or failed",
            labelnames=["operation", "kind"],  # kind = timeout/unavailable
            registry=registry,
        )

        self.transcript_messages = Counter(
            "tutormeter_transcript_messages_total",
            "Transcript messages saved",
            labelnames=["role"],
            registry=registry,
        )

    @classmethod
    def get_instance(cls) -> "MetricsCollector":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_request(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        duration_seconds: float,
        error_code: Optional[str] = None,
    ):
        self.requests_total.labels(
            endpoint=endpoint,
            method=method,
            status=str(status_code),
            error_code=error_code or "none",
        ).inc()

        self.request_duration.labels(
            endpoint=endpoint,
            method=method,
        ).observe(duration_seconds)

    def record_session(self, model: str, outcome: str, count: int = 1):
        if count:
            self.sessions_total.labels(model=model, outcome=outcome).inc(count)

    def record_tokens(
        self,
        model: str,
        channel: str,
        input_tokens: int,
        output_tokens: int,
    ):
        self.tokens_total.labels(model=model, type="input", channel=channel).inc(input_tokens)
        self.tokens_total.labels(model=model, type="output", channel=channel).inc(output_tokens)

    def record_cost(self, model: str, cost_usd: Union[Decimal, float]):
        self.cost_total.labels(model=model).inc(float(cost_usd))

    def record_limit_denial(self, limit_type: str, reason: str):
        self.limit_denials.labels(limit_type=limit_type, reason=reason).inc()

    def record_duplicate_usage(self, channel: str):
        self.duplicate_usage_events.labels(channel=channel).inc()

    def record_store_error(self, operation: str, kind: str):
        self.store_errors.labels(operation=operation, kind=kind).inc()

    def record_transcript_message(self, role: str):
        self.transcript_messages.labels(role=role).inc()


_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times. Without a registry the existing collector
    is kept, else one is created on the default registry.
    """
    global _metrics_instance

    if _metrics_instance is not None and registry in (None, _metrics_instance.registry):
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry or REGISTRY)
    MetricsCollector._instance = _metrics_instance
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the metrics collector, creating the default one on first use."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector.get_instance()
    return _metrics_instance


def metrics_endpoint() -> Response:
    """Render the Prometheus exposition for the active registry."""
    content = generate_latest(get_metrics().registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
