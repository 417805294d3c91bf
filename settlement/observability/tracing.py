"""
Distributed Tracing with OpenTelemetry.

Requests and SQL are traced by auto-instrumentation; purchase transitions
open their own spans through trace_operation so a gateway call, the
guarded write and the balance update show up under one parent.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span
from sqlalchemy.ext.asyncio import AsyncEngine

from settlement.config import settings

_tracer = trace.get_tracer("settlement.purchases")


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider when TRACING_ENABLED is set."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: FastAPI) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Span around one purchase operation.

    None-valued attributes are dropped and anything that is not a span
    primitive is stringified. An escaping exception marks the span as
    an error and is re-raised.
    """
    with _tracer.start_as_current_span(operation_name) as span:
        for key, value in attributes.items():
            if value is None:
                continue
            span.set_attribute(
                key, value if isinstance(value, (str, int, float, bool)) else str(value)
            )
        yield span
