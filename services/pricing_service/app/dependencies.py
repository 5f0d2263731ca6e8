"""Dependency helpers for pricing service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .repository import PricingRepository
from .services import PricingService


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an AsyncSession for the current request lifecycle."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> PricingRepository:
    """Return a repository bound to the active session."""

    return PricingRepository(session)


def get_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_prediction_client(request: Request) -> Any:
    return getattr(request.app.state, "prediction_client", None)


def get_event_publisher(request: Request) -> Any:
    return getattr(request.app.state, "event_publisher", None)


def get_pricing_service(
    repository: PricingRepository = Depends(get_repository),
    settings: ServiceSettings = Depends(get_settings),
    prediction_client: Any = Depends(get_prediction_client),
    event_publisher: Any = Depends(get_event_publisher),
) -> PricingService:
    return PricingService(
        repository,
        prediction_client=prediction_client,
        event_publisher=event_publisher,
        max_batch_size=settings.pricing_max_batch_size,
        default_currency=settings.pricing_default_currency,
    )
