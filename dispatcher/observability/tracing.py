"""
OpenTelemetry tracing for enqueue, lease and execute spans.

Library code always asks :func:`get_tracer` for a tracer. Until
:func:`setup_tracing` installs an SDK provider that is the API's no-op
tracer, so tests and embedders pay nothing for the spans.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from dispatcher import __version__
from dispatcher.config import Settings, get_settings

INSTRUMENTATION_NAME = "dispatcher"

_provider: TracerProvider | None = None


def _build_provider(settings: Settings, console: bool) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {SERVICE_NAME: settings.otel_service_name, SERVICE_VERSION: __version__}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True))
    )
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    return provider


def setup_tracing(settings: Settings | None = None, enable_console_export: bool = False) -> Tracer:
    """
    Install an SDK tracer provider exporting over OTLP/gRPC.

    The global provider can only be set once per process, so a second call
    returns a tracer from the provider already installed.

    Args:
        settings: Source of the collector endpoint and service name.
        enable_console_export: Also print finished spans to stdout.
    """
    global _provider

    if _provider is None:
        _provider = _build_provider(settings or get_settings(), enable_console_export)
        trace.set_tracer_provider(_provider)
    return get_tracer()


def shutdown_tracing() -> None:
    """Flush buffered spans and stop the exporters."""
    global _provider

    if _provider is not None:
        _provider.shutdown()
        _provider = None


def instrument_sqlalchemy(engine: Any) -> None:
    """Emit a span per broker statement; ``engine`` may be sync or async."""
    SQLAlchemyInstrumentor().instrument(engine=getattr(engine, "sync_engine", engine))


def get_tracer() -> Tracer:
    return trace.get_tracer(INSTRUMENTATION_NAME, __version__)
