from contextlib import asynccontextmanager
import logging

import httpx
from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)
from services.common.kafka import KafkaProducerStub

from .api.health import router as health_router
from .api.prices import router as prices_router
from .api.rules import router as rules_router
from .events import PricingEventPublisher
from .models import Base
from .prediction import PredictionClient

SERVICE_NAME = "Pricing Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./pricing_service.db"

_LOGGER = logging.getLogger(__name__)


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Pricing Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)
    redis_client = resolve_redis(resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kafka_producer: KafkaProducerStub | None = None
        prediction_client: PredictionClient | None = None
        app.state.session_factory = session_factory
        try:
            await create_schema(database_url, Base.metadata)
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            app.state.kafka_producer = kafka_producer
            app.state.event_publisher = PricingEventPublisher(kafka_producer)
            prediction_client = PredictionClient(
                client=httpx.AsyncClient(timeout=resolved_settings.pricing_prediction_timeout_seconds),
                base_url=resolved_settings.pricing_prediction_url,
                redis=redis_client,
                cache_ttl=resolved_settings.pricing_prediction_cache_ttl_seconds,
            )
            app.state.prediction_client = prediction_client
            if not resolved_settings.prediction_enabled:
                _LOGGER.info("No prediction service configured; dynamic_ai rules will keep the base price.")
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.event_publisher = None
            app.state.kafka_producer = None
            app.state.prediction_client = None
            if prediction_client is not None:
                await prediction_client.close()
            if kafka_producer is not None:
                await kafka_producer.close()
            await dispose_engines()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(rules_router)
    app.include_router(prices_router)
    return app


app = create_app()
