"""Event publishing helpers for the pricing service."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from services.common.kafka import KafkaProducerStub

from .models import PriceChange

PRICE_CHANGED_TOPIC = "pricing.price.changed.v1"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat()


def _money(cents: int) -> str:
    return str((Decimal(cents) / Decimal("100")).quantize(Decimal("0.01")))


def change_percentage(old_price: int, new_price: int) -> Decimal:
    """Percentage delta rounded to two places; zero when the old price is zero."""

    if old_price == 0:
        return Decimal("0.00")
    delta = (Decimal(new_price) - Decimal(old_price)) / Decimal(old_price) * Decimal("100")
    return delta.quantize(Decimal("0.01"))


class PricingEventPublisher:
    """Publishes price change events keyed by SKU."""

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, key: str, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        await self._producer.send(topic, envelope, key=key)

    async def price_changed(self, change: PriceChange, *, currency: str) -> None:
        await self._emit(PRICE_CHANGED_TOPIC, change.sku, {"change": self._serialize_change(change, currency)})

    def _serialize_change(self, change: PriceChange, currency: str) -> dict[str, Any]:
        return {
            "id": change.id,
            "sku": change.sku,
            "ruleId": change.rule_id,
            "changeType": change.change_type,
            "currency": currency,
            "oldPrice": _money(change.old_price_cents),
            "newPrice": _money(change.new_price_cents),
            "changePercentage": str(change_percentage(change.old_price_cents, change.new_price_cents)),
            "reason": change.reason,
            "createdAt": _iso(change.created_at),
        }
