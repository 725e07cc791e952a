"""Tracing for the voicepipe engine.

One TracerProvider per process, installed by the app lifespan:
  - ``console`` (default): spans print to stdout.
  - ``otlp``: spans ship to an OTLP collector (``pip install voicepipe-engine[otlp]``).

Each pipeline stage runs inside ``stage_span("stt" | "llm" | "tts")``, which
names the span ``voicepipe.<stage>``, tags it with the stage and the caller's
size attributes, and marks it as an error if the stage raises.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

SERVICE_NAME = "voicepipe-engine"
_TRACER_NAME = "voicepipe"
DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"

_provider: TracerProvider | None = None


def init_telemetry(exporter: str = "console", endpoint: str = DEFAULT_OTLP_ENDPOINT) -> None:
    """Install the process TracerProvider. Later calls are no-ops."""
    global _provider
    if _provider is not None:
        return

    provider = TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    if exporter.lower() == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        logger.info("[Telemetry] OTLP exporter → %s", endpoint)
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("[Telemetry] Console exporter active.")

    trace.set_tracer_provider(provider)
    _provider = provider


def shutdown_telemetry() -> None:
    """Flush pending spans; called when the app stops."""
    if _provider is not None:
        _provider.force_flush()


def get_tracer() -> trace.Tracer:
    """Return the voicepipe tracer (safe to call before ``init_telemetry``)."""
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def stage_span(stage: str, attributes: dict[str, Any] | None = None) -> Iterator[trace.Span]:
    """Run one pipeline stage inside a ``voicepipe.<stage>`` span."""
    with get_tracer().start_as_current_span(
        f"voicepipe.{stage}", record_exception=False, set_status_on_exception=False
    ) as span:
        span.set_attribute("voicepipe.stage", stage)
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise


def current_trace_id() -> str:
    """Hex trace id of the active span, or ``""`` outside any span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        return format(ctx.trace_id, "032x")
    return ""
