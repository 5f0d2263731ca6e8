"""Response shaping shared by the pricing routers."""

from __future__ import annotations

from datetime import datetime

from ..domain import as_utc
from ..events import change_percentage
from ..metrics import price_direction
from ..models import PriceChange, PricingRule, ProductPrice
from ..schemas import (
    PriceChangeResponse,
    PricingRuleResponse,
    ProductPriceResponse,
    from_cents,
)


def _serialize_datetime(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def serialize_rule(rule: PricingRule) -> PricingRuleResponse:
    return PricingRuleResponse.model_validate(
        {
            "id": rule.id,
            "sku": rule.sku,
            "name": rule.name,
            "description": rule.description,
            "ruleType": rule.rule_type,
            "status": rule.status,
            "priority": rule.priority,
            "minPrice": from_cents(rule.min_price_cents),
            "maxPrice": from_cents(rule.max_price_cents),
            "startAt": _serialize_datetime(rule.start_at),
            "endAt": _serialize_datetime(rule.end_at),
            "config": rule.config or {},
            "conditions": [
                {
                    "id": condition.id,
                    "conditionType": condition.condition_type,
                    "operator": condition.operator,
                    "value": condition.value,
                }
                for condition in rule.conditions
            ],
            "createdAt": _serialize_datetime(rule.created_at),
            "updatedAt": _serialize_datetime(rule.updated_at),
        }
    )


def serialize_change(change: PriceChange) -> PriceChangeResponse:
    return PriceChangeResponse.model_validate(
        {
            "id": change.id,
            "sku": change.sku,
            "ruleId": change.rule_id,
            "changeType": change.change_type,
            "oldPrice": from_cents(change.old_price_cents),
            "newPrice": from_cents(change.new_price_cents),
            "changePercentage": change_percentage(change.old_price_cents, change.new_price_cents),
            "direction": price_direction(change.old_price_cents, change.new_price_cents),
            "reason": change.reason,
            "metadata": change.metadata_json,
            "createdAt": _serialize_datetime(change.created_at),
        }
    )


def product_price_payload(product_price: ProductPrice) -> dict[str, object]:
    return {
        "sku": product_price.sku,
        "currency": product_price.currency,
        "price": from_cents(product_price.price_cents),
        "createdAt": _serialize_datetime(product_price.created_at),
        "updatedAt": _serialize_datetime(product_price.updated_at),
    }


def serialize_product_price(product_price: ProductPrice) -> ProductPriceResponse:
    return ProductPriceResponse.model_validate(product_price_payload(product_price))
