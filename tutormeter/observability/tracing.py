"""
TutorMeter - OpenTelemetry Tracing

Distributed tracing with OpenTelemetry.

Features:
- W3C trace context propagation (traceparent header)
- Server spans for HTTP requests
- Internal spans around metering operations

Usage:
    from tutormeter.observability.tracing import setup_tracing, trace_operation

    setup_tracing(service_name="tutormeter")

    with trace_operation("sessions.create", subscriber_id="u1") as span:
        ...
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.propagate import set_global_textmap, extract
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import SpanKind
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator


@dataclass
class TraceContext:
    """Trace identifiers of a span, hex encoded."""
    trace_id: str
    span_id: str
    trace_flags: int = 1

    @classmethod
    def from_span(cls, span) -> "TraceContext":
        ctx = span.get_span_context()
        return cls(
            trace_id=format(ctx.trace_id, "032x"),
            span_id=format(ctx.span_id, "016x"),
            trace_flags=ctx.trace_flags,
        )

    def to_traceparent(self) -> str:
        """Generate W3C traceparent header value."""
        return f"00-{self.trace_id}-{self.span_id}-{self.trace_flags:02x}"


class TracingManager:
    """
    Central tracing manager using OpenTelemetry.

    The provider belongs to the manager and is not installed globally;
    several managers may coexist in one process.
    """

    _instance: Optional["TracingManager"] = None

    def __init__(
        self,
        service_name: str = "tutormeter",
        service_version: str = "0.1.0",
        console_export: bool = False,
    ):
        self.service_name = service_name
        self.service_version = service_version

        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
        })

        self.provider = TracerProvider(resource=resource)

        if console_export:
            self.provider.add_span_processor(
                SimpleSpanProcessor(ConsoleSpanExporter())
            )

        set_global_textmap(TraceContextTextMapPropagator())

        self.tracer = self.provider.get_tracer(service_name, service_version)

    @classmethod
    def get_instance(cls) -> "TracingManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None

    def get_tracer(self) -> trace.Tracer:
        return self.tracer

    def extract_context(self, headers: Dict[str, str]) -> Context:
        """Extract the parent trace context from HTTP headers."""
        normalized = {k.lower(): v for k, v in headers.items()}
        return extract(normalized)

    def start_span(
        self,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Optional[Dict[str, Any]] = None,
        context: Optional[Context] = None,
    ):
        return self.tracer.start_as_current_span(
            name,
            kind=kind,
            attributes=attributes,
            context=context,
        )

    def start_server_span(
        self,
        name: str,
        headers: Dict[str, str],
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Start a server span parented on the incoming traceparent, if any."""
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.SERVER,
            attributes=attributes,
            context=self.extract_context(headers),
        )

    def shutdown(self):
        self.provider.shutdown()


_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = "tutormeter",
    service_version: str = "0.1.0",
    console_export: bool = False,
) -> TracingManager:
    """
    Setup tracing. Call once at application startup.

    OTEL_CONSOLE_EXPORT=true enables console span export.
    """
    global _tracing_instance

    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    _tracing_instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        console_export=console_export,
    )
    TracingManager._instance = _tracing_instance
    return _tracing_instance


def get_tracing_manager() -> TracingManager:
    global _tracing_instance
    if _tracing_instance is None:
        _tracing_instance = TracingManager.get_instance()
    return _tracing_instance


@contextmanager
def trace_operation(operation: str, **attributes):
    """
    Internal span around a metering operation.

    Usage:
        with trace_operation("ingestor.record_usage", session_id="s1") as span:
            outcome = ...
            span.set_attribute("tutormeter.duplicate", outcome.duplicate)
    """
    tracing = get_tracing_manager()
    attrs = {f"tutormeter.{key}": value for key, value in attributes.items() if value is not None}

    with tracing.start_span(operation, attributes=attrs) as span:
        yield span
