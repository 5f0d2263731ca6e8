"""Client for the external optimal-price prediction service."""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Protocol

import httpx

from services.common.cache import RedisType, cache_key

from .domain import PricingContext
from .metrics import (
    PRICING_PREDICTION_CACHE_EVENTS_TOTAL,
    PRICING_PREDICTION_LATENCY_SECONDS,
    PRICING_PREDICTION_REQUESTS_TOTAL,
)

logger = logging.getLogger(__name__)


class PricePredictionClient(Protocol):
    @property
    def configured(self) -> bool: ...

    async def optimal_price(self, sku: str, base_price: int, context: PricingContext) -> int | None: ...


def _parse_price(payload: Any) -> int | None:
    if not isinstance(payload, dict):
        return None
    value = payload.get("optimalPrice")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return int(round(value))


class PredictionClient:
    """Fetches an optimal price per SKU and caches the answer in Redis.

    Every failure path returns ``None`` so AI-optimised rules fall back to the
    base price instead of failing the request.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        base_url: str | None,
        redis: RedisType | None = None,
        cache_ttl: int = 3600,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/") if base_url else None
        self._redis = redis
        self._cache_ttl = cache_ttl

    @property
    def configured(self) -> bool:
        return self._base_url is not None

    async def close(self) -> None:
        await self._client.aclose()

    async def optimal_price(self, sku: str, base_price: int, context: PricingContext) -> int | None:
        if self._base_url is None:
            PRICING_PREDICTION_REQUESTS_TOTAL.labels(outcome="disabled").inc()
            return None

        key = cache_key("pricing", "optimal_price", sku)
        cached = await self._read_cache(key)
        if cached is not None:
            return cached

        started = perf_counter()
        try:
            response = await self._client.post(
                f"{self._base_url}/predictions",
                json={"sku": sku, "basePrice": base_price, "context": context.snapshot()},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            PRICING_PREDICTION_REQUESTS_TOTAL.labels(outcome="http_error").inc()
            logger.warning("Prediction service returned %s for %s", exc.response.status_code, sku)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            PRICING_PREDICTION_REQUESTS_TOTAL.labels(outcome="unavailable").inc()
            logger.warning("Prediction service unavailable for %s: %s", sku, exc)
            return None
        finally:
            PRICING_PREDICTION_LATENCY_SECONDS.observe(perf_counter() - started)

        price = _parse_price(payload)
        if price is None:
            PRICING_PREDICTION_REQUESTS_TOTAL.labels(outcome="invalid_payload").inc()
            return None

        PRICING_PREDICTION_REQUESTS_TOTAL.labels(outcome="success").inc()
        await self._write_cache(key, price)
        return price

    async def _read_cache(self, key: str) -> int | None:
        if self._redis is None or self._cache_ttl <= 0:
            return None
        try:
            cached = await self._redis.get(key)
        except Exception:
            PRICING_PREDICTION_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            return None
        if cached is None:
            PRICING_PREDICTION_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            return None
        try:
            value = int(cached)
        except (TypeError, ValueError):
            PRICING_PREDICTION_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            return None
        PRICING_PREDICTION_CACHE_EVENTS_TOTAL.labels(event="hit").inc()
        PRICING_PREDICTION_REQUESTS_TOTAL.labels(outcome="cached").inc()
        return value

    async def _write_cache(self, key: str, price: int) -> None:
        if self._redis is None or self._cache_ttl <= 0:
            return
        try:
            await self._redis.set(key, str(price), ex=self._cache_ttl)
        except Exception:
            PRICING_PREDICTION_CACHE_EVENTS_TOTAL.labels(event="error").inc()
        else:
            PRICING_PREDICTION_CACHE_EVENTS_TOTAL.labels(event="write").inc()
