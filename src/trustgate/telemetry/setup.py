"""Tracer provider lifecycle for the gateway and its upstream calls."""

import logging
from collections.abc import Callable

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter as GrpcSpanExporter,
)
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
    OTLPSpanExporter as HttpSpanExporter,
)
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from trustgate.config import Settings, get_settings

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None

_EXPORTERS: dict[str, Callable[[Settings], SpanExporter]] = {
    "otlp": lambda s: GrpcSpanExporter(endpoint=s.otel_exporter_otlp_endpoint),
    "otlp-http": lambda s: HttpSpanExporter(
        endpoint=s.otel_exporter_otlp_http_endpoint.rstrip("/") + "/v1/traces"
    ),
    "console": lambda s: ConsoleSpanExporter(),
}


def _build_provider(settings: Settings) -> TracerProvider:
    environment = "development" if settings.debug else "production"
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": settings.version,
                "deployment.environment": environment,
                "github.host": settings.github_web_url,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_traces_sampler_ratio)),
    )
    exporter = _EXPORTERS[settings.otel_exporter_type](settings)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_telemetry(settings: Settings | None = None) -> None:
    """Install the global tracer provider and instrument outgoing HTTPX calls.

    Does nothing when tracing is off or a provider is already installed.
    Run it before the issuers are built so their spans are recorded.
    """
    global _tracer_provider

    settings = settings or get_settings()
    if not settings.otel_enabled:
        logger.debug("Tracing off, spans will not be recorded")
        return
    if _tracer_provider is not None:
        return

    _tracer_provider = _build_provider(settings)
    trace.set_tracer_provider(_tracer_provider)
    HTTPXClientInstrumentor().instrument(tracer_provider=_tracer_provider)

    logger.info(
        "Tracing enabled: exporter=%s sample_ratio=%s",
        settings.otel_exporter_type,
        settings.otel_traces_sampler_ratio,
    )


def instrument_app(app) -> None:
    """Attach server spans to a FastAPI app; a no-op while tracing is off."""
    if _tracer_provider is None:
        return
    FastAPIInstrumentor.instrument_app(app, tracer_provider=_tracer_provider)


def shutdown_telemetry() -> None:
    global _tracer_provider

    if _tracer_provider is None:
        return
    HTTPXClientInstrumentor().uninstrument()
    _tracer_provider.shutdown()
    _tracer_provider = None
    logger.info("Tracing stopped, pending spans flushed")


def get_tracer(name: str) -> trace.Tracer:
    """Tracer for ``name``; non-recording until setup_telemetry has run."""
    return trace.get_tracer(name)
