from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from farmledger.context import get_correlation_id
from farmledger.platform.ledger.errors import AccountingError

if TYPE_CHECKING:
    from farmledger.core.config import Settings
    from farmledger.platform.context import ActorContext


_provider: TracerProvider | None = None
_exporting = False


def _tracer_provider(service_name: str) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings) -> TracerProvider | None:
    """Install the SDK provider and its exporters when tracing is enabled in settings."""
    global _exporting
    if not settings.otel_enabled:
        return None
    provider = _tracer_provider(settings.app_name)
    if _exporting:
        return provider
    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporting = True
    return provider


def capture_spans(service_name: str = "farmledger") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def _attribute(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, Decimal, date)):
        return str(value)
    return value


@contextmanager
def ledger_span(tracer: trace.Tracer, name: str, ctx: ActorContext, **attributes: Any) -> Iterator[trace.Span]:
    """Span tagged with the caller's tenant and actor; accounting failures keep their error code."""
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("actor", ctx.user_id)
        if ctx.tenant_id is not None:
            span.set_attribute("tenant_id", ctx.tenant_id)
        correlation_id = ctx.correlation_id or get_correlation_id()
        if correlation_id is not None:
            span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, _attribute(value))
        try:
            yield span
        except AccountingError as exc:
            span.set_attribute("error_code", exc.code)
            raise
