"""Logging and tracing setup for the broker process."""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from typing import Any, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .settings import BrokerSettings

# Event keys whose values are credential material.
SECRET_KEYS = frozenset({"token", "root_token", "secret", "authorization", "key"})
REDACTED = "**redacted**"

# Probe endpoints stay out of traces.
UNTRACED_URLS = "healthz,metrics"

_state: dict[str, bool] = {"logging": False, "tracing": False, "httpx": False}


def redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Route structlog through stdlib logging as one JSON object per line."""

    numeric_level = level if isinstance(level, int) else logging.getLevelName(str(level or "INFO").strip().upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    if _state["logging"]:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _state["logging"] = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> dict[str, str]:
    """Parse ``k1=v1,k2=v2`` as used by ``OTEL_EXPORTER_OTLP_HEADERS``."""

    parsed: dict[str, str] = {}
    for item in (headers or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def _span_processor(endpoint: Optional[str], headers: Mapping[str, str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=dict(headers)))
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(settings: BrokerSettings, service_name: str) -> None:
    """Install the tracer provider once per process and trace outgoing Grafana Cloud calls.

    Spans are exported over OTLP/HTTP when an endpoint is configured and kept
    in memory otherwise. A provider installed by someone else is left alone.
    """

    if not _state["tracing"]:
        if not isinstance(trace.get_tracer_provider(), TracerProvider):
            ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
            provider = TracerProvider(
                resource=Resource.create({"service.name": service_name}),
                sampler=ParentBased(TraceIdRatioBased(ratio)),
            )
            provider.add_span_processor(
                _span_processor(settings.otel_exporter_endpoint, parse_otlp_headers(settings.otel_exporter_headers))
            )
            trace.set_tracer_provider(provider)
        _state["tracing"] = True

    if not _state["httpx"]:
        HTTPXClientInstrumentor().instrument()
        _state["httpx"] = True


def instrument_fastapi_app(app) -> None:
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=UNTRACED_URLS,
    )
