# telemetry.py — Optional OpenTelemetry tracing for the Task Board API
"""
Tracing is switched on by OTEL_EXPORTER_OTLP_ENDPOINT. Without it, or without
the opentelemetry packages (the ``telemetry`` extra), every helper here is a
no-op and ``span()`` yields None.
"""
import os
import logging
from contextlib import contextmanager

logger = logging.getLogger("taskboard.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "taskboard-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

_provider = None


def _instrument(app, engine, provider) -> None:
    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-fastapi not installed")

    if engine is not None:
        try:
            from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
            SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

    # Outbound email API and client polling
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    except ImportError:
        logger.warning("opentelemetry-instrumentation-httpx not installed")


def setup_telemetry(app=None, engine=None):
    """Register an OTLP tracer provider and instrument the app, the DB engine and httpx."""
    global _provider
    if not OTLP_ENDPOINT:
        logger.info("Tracing disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None
    if _provider is not None:
        return _provider

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed; tracing disabled")
        return None

    resource = Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)
    _instrument(app, engine, provider)

    _provider = provider
    logger.info(f"📡 Tracing exported to {OTLP_ENDPOINT}")
    return provider


@contextmanager
def span(name: str, **attributes):
    """Start a span when tracing is active; otherwise yield None"""
    if _provider is None:
        yield None
        return
    from opentelemetry import trace
    tracer = trace.get_tracer("taskboard", SERVICE_VERSION)
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            current.set_attribute(key, value)
        yield current
