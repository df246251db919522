"""Trace propagation between the sender and receiver processes.

The sender stamps each message with W3C ``traceparent`` headers and the
receiver continues that trace, so a span tree links one message id's send
and receive. With ``TRACING_ENABLED`` off no provider is installed and the
OpenTelemetry API hands out no-op tracers; call sites stay unconditional.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from opentelemetry import context, trace  # type: ignore
from opentelemetry.propagate import extract, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


SERVICE_NAME = "mq-stress-client"


def configure_tracing(mode: str, enabled: bool = False) -> None:
    """Export spans for ``mq-stress-client`` in ``mode`` to the console when ``enabled``."""
    if enabled:
        resource = Resource.create({"service.name": SERVICE_NAME, "stress.mode": mode})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)

    # Both sides must agree on the header format
    set_global_textmap(TraceContextTextMapPropagator())


def tracer_for(role: str) -> Tracer:
    return trace.get_tracer(f"{SERVICE_NAME}.{role}")


def outgoing_headers() -> Dict[str, str]:
    """Trace headers for a message sent from inside the current span."""
    carrier: Dict[str, str] = {}
    inject(carrier)
    return carrier


def _carrier(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    # AMQP header values come back from the broker as bytes
    carrier: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            value = value.decode("utf-8", "replace")
        carrier[str(key)] = value if isinstance(value, str) else str(value)
    return carrier


@contextmanager
def delivery_context(headers: Optional[Mapping[str, Any]]) -> Iterator[None]:
    """Run the block inside the trace carried by a delivery's headers."""
    token = context.attach(extract(_carrier(headers)))
    try:
        yield
    finally:
        context.detach(token)
