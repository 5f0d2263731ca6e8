"""Plain domain types shared by the calculator, selection and service layers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any


class RuleType(str, Enum):
    TIME_BASED = "time_based"
    INVENTORY_BASED = "inventory_based"
    DEMAND_BASED = "demand_based"
    COMPETITOR_BASED = "competitor_based"
    SEASONAL = "seasonal"
    BUNDLE = "bundle"
    VOLUME = "volume"
    DYNAMIC_AI = "dynamic_ai"


class RuleStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class RulePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    RulePriority.LOW: 0,
    RulePriority.MEDIUM: 1,
    RulePriority.HIGH: 2,
    RulePriority.CRITICAL: 3,
}


class ChangeType(str, Enum):
    """Origin of a price change record."""

    RULE = "rule"
    MANUAL = "manual"
    ROLLBACK = "rollback"


class ConditionType(str, Enum):
    TIME_OF_DAY = "time_of_day"
    DAY_OF_WEEK = "day_of_week"
    STOCK_LEVEL = "stock_level"
    VIEW_COUNT = "view_count"
    SALES_VELOCITY = "sales_velocity"
    COMPETITOR_PRICE = "competitor_price"
    SEASON = "season"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    IN_LIST = "in_list"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize ``value`` to UTC; naive values are taken to already be UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class PricingContext:
    """Snapshot of the signals a rule is evaluated against.

    Assembled by the caller (checkout, catalog sync, the HTTP API); the
    calculator never fetches any of it itself. ``predicted_price`` carries the
    prediction service's answer for AI-optimised rules.
    """

    now: datetime = field(default_factory=_utcnow)
    stock_level: int | None = None
    views_last_24h: int = 0
    purchases_last_24h: int = 0
    competitor_prices: tuple[int, ...] = ()
    quantity: int | None = None
    predicted_price: int | None = None

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly representation stored with price change records."""

        return {
            "now": self.now.isoformat(),
            "stockLevel": self.stock_level,
            "viewsLast24h": self.views_last_24h,
            "purchasesLast24h": self.purchases_last_24h,
            "competitorPrices": list(self.competitor_prices),
            "quantity": self.quantity,
            "predictedPrice": self.predicted_price,
        }


@dataclass(frozen=True, slots=True)
class RuleCondition:
    condition_type: ConditionType
    operator: ConditionOperator
    value: str
    id: int | None = None


@dataclass(frozen=True, slots=True)
class RuleDefinition:
    """Immutable view of a pricing rule used for evaluation."""

    rule_type: RuleType
    config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    min_price_cents: int | None = None
    max_price_cents: int | None = None
    id: int | None = None
    name: str = ""
    status: RuleStatus = RuleStatus.ACTIVE
    priority: RulePriority = RulePriority.MEDIUM
    start_at: datetime | None = None
    end_at: datetime | None = None
    conditions: tuple[RuleCondition, ...] = ()
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PriceEvaluation:
    """Outcome of evaluating one rule against one base price."""

    base_price: int
    price: int
    formula_price: int
    config_error: str | None = None

    @property
    def failed_closed(self) -> bool:
        return self.config_error is not None

    @property
    def changed(self) -> bool:
        return self.price != self.base_price
