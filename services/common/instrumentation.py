from typing import Any, cast

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .config import ServiceSettings
from .tracing import configure_tracing

SERVICE_VERSION = "0.2.0"


def instrument_app(app: FastAPI, settings: ServiceSettings) -> None:
    """Expose HTTP metrics on ``/metrics`` when enabled and remember the settings."""

    if settings.enable_metrics:
        Instrumentator(excluded_handlers=["/health", "/metrics"]).instrument(app).expose(app)

    state = cast(Any, app.state)
    state.settings = settings


def build_app(settings: ServiceSettings, *, version: str = SERVICE_VERSION, **extra_kwargs: Any) -> FastAPI:
    """Create a FastAPI instance with standard metadata, metrics and tracing."""

    app = FastAPI(title=settings.app_name, version=version, **extra_kwargs)
    instrument_app(app, settings)
    configure_tracing(app, settings)
    return app
