"""
OpenTelemetry tracing setup.

Queue operations open spans through :func:`get_tracer` whether or not
tracing was configured; :func:`setup_tracing` is called by the worker and
reaper processes to export them.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from docqueue import __version__
from docqueue.config import get_settings

# Messaging semantic convention attribute names
ATTR_SYSTEM = "messaging.system"
ATTR_MESSAGE_ID = "messaging.message.id"
ATTR_PARTITION_KEY = "messaging.docqueue.partition_key"
ATTR_DELIVERY_COUNT = "messaging.docqueue.delivery_count"
ATTR_BATCH_SIZE = "messaging.batch.message_count"

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Install an OTLP-exporting tracer provider for this process.

    Args:
        enable_console_export: If True, also print spans to stdout.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
            ATTR_SYSTEM: "docqueue",
        }
    )

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                insecure=True,
            )
        )
    )

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(settings.otel_service_name, __version__)
    return _tracer


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """
    Emit a child span for every statement the queue sends to the store.

    Args:
        engine: The async engine backing the queue.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Until :func:`setup_tracing` runs, spans go to whatever provider is
    globally installed (a no-op one by default).
    """
    if _tracer is None:
        return trace.get_tracer("docqueue", __version__)
    return _tracer


def set_message_attributes(span: Span, message: Any) -> None:
    """Tag a span with the identity and delivery state of a message."""
    span.set_attribute(ATTR_MESSAGE_ID, str(message.id))
    span.set_attribute(ATTR_DELIVERY_COUNT, message.delivery_count)
    if message.partition_key is not None:
        span.set_attribute(ATTR_PARTITION_KEY, message.partition_key)


def set_batch_attributes(span: Span, count: int, partition_key: str | None = None) -> None:
    """Tag a span with the size and partition of a multi-message operation."""
    span.set_attribute(ATTR_BATCH_SIZE, count)
    if partition_key is not None:
        span.set_attribute(ATTR_PARTITION_KEY, partition_key)
