import logging

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter  # type: ignore[attr-defined]
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Tracer

from .config import ServiceSettings

_LOGGER = logging.getLogger(__name__)
_INSTRUMENTED_APPS: set[int] = set()
_TRACER_NAME = "services.pricing"


def _create_exporter(settings: ServiceSettings) -> OTLPSpanExporter | None:
    if settings.tracing_endpoint is None:
        return None
    return OTLPSpanExporter(endpoint=settings.tracing_endpoint)


def _pricing_provider(settings: ServiceSettings) -> TracerProvider:
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        return current

    resource = Resource.create(
        {
            "service.name": settings.app_name,
            "service.namespace": "pricing",
            "deployment.environment": settings.environment,
        }
    )
    # Child spans inherit the incoming request's sampling decision.
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(settings.tracing_sample_rate)))
    exporter = _create_exporter(settings)
    if exporter is None:
        _LOGGER.warning("Tracing enabled for %s without an OTLP endpoint; spans stay in-process.", settings.app_name)
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


def configure_tracing(app: FastAPI, settings: ServiceSettings) -> None:
    """Trace incoming requests and prediction calls when tracing is enabled."""

    if not settings.enable_tracing or id(app) in _INSTRUMENTED_APPS:
        return

    provider = _pricing_provider(settings)
    FastAPIInstrumentor().instrument_app(app, tracer_provider=provider)
    _INSTRUMENTED_APPS.add(id(app))
    instrumentor = HTTPXClientInstrumentor()
    if not instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.instrument(tracer_provider=provider)


def get_tracer() -> Tracer:
    """Return the tracer used for pricing spans (a no-op tracer when tracing is off)."""

    return trace.get_tracer(_TRACER_NAME)
