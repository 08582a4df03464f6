from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from ..settings import Settings
from .logging import get_logger

_TRACER_NAME = "dynamo_gateway"


def _truthy(v: str | None) -> bool:
    return str(v or "").strip().lower() in ("1", "true", "yes", "y", "on")


def tracing_enabled(settings: Settings) -> bool:
    return bool(getattr(settings, "otel_enabled", False)) or _truthy(
        os.environ.get("OTEL_ENABLED")
    )


def configure_otel(settings: Settings) -> None:
    """
    Optional OpenTelemetry setup.

    - If OTEL is disabled, do nothing (the API hands out no-op tracers).
    - If exporter config is missing, fall back to console exporter (useful in dev).
    """
    if not tracing_enabled(settings):
        return

    log = get_logger("otel")

    service_name = str(
        getattr(settings, "otel_service_name", None)
        or os.environ.get("OTEL_SERVICE_NAME")
        or "dynamo-gateway"
    ).strip()

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    endpoint = str(
        getattr(settings, "otel_exporter_otlp_endpoint", None)
        or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
        or ""
    ).strip()

    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        log.info("otel_configured", exporter="otlp_http", endpoint=endpoint)
    else:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        log.info("otel_configured", exporter="console")

    trace.set_tracer_provider(provider)


@contextmanager
def span(name: str, **attributes: Any) -> Iterator[Any]:
    """
    Open a span around one gateway operation.

    Without a configured provider the API returns a non-recording span, so callers
    behave identically with tracing on or off. Exceptions are recorded, never swallowed.
    """
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(name) as sp:
        for k, v in attributes.items():
            if v is None:
                continue
            sp.set_attribute(k, v if isinstance(v, (str, bool, int, float)) else str(v))
        yield sp
