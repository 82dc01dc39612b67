# telemetry.py — OpenTelemetry instrumentation for Agentboard
"""
Exports traces to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set,
otherwise stays in no-op mode. The OpenTelemetry packages are an optional
extra (`pip install agentboard[telemetry]`).
"""
import os
import logging

logger = logging.getLogger("agentboard.telemetry")

# Service identity
SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "agentboard-api")
SERVICE_VERSION = "1.0.0"


def setup_telemetry(app=None, endpoint=None):
    """Initialise tracing and instrument FastAPI + SQLAlchemy.

    Returns the tracer provider, or None when tracing is disabled or the SDK
    is not installed.
    """
    endpoint = endpoint if endpoint is not None else os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    if not endpoint:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed — tracing disabled")
        return None

    try:
        resource = Resource.create({
            RES_SVC_NAME: SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": os.getenv("ENVIRONMENT", "development"),
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(provider)

        if app is not None:
            try:
                from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
                FastAPIInstrumentor.instrument_app(
                    app,
                    excluded_urls="health",
                    tracer_provider=provider,
                )
                logger.info("FastAPI instrumented with OpenTelemetry")
            except ImportError:
                logger.warning("opentelemetry-instrumentation-fastapi not installed")

        try:
            from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
            SQLAlchemyInstrumentor().instrument(tracer_provider=provider)
            logger.info("SQLAlchemy instrumented with OpenTelemetry")
        except ImportError:
            logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

        logger.info(f"OpenTelemetry initialised → {endpoint}")
        return provider

    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None
