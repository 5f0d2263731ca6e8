"""Pydantic schemas for the pricing service."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from .domain import (
    ConditionOperator,
    ConditionType,
    PricingContext,
    RulePriority,
    RuleStatus,
    RuleType,
    as_utc,
)

Money = Annotated[Decimal, Field(ge=Decimal("0"), max_digits=12, decimal_places=2)]

_CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    quantized = (amount * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP)
    return int(quantized)


def from_cents(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(cents) / Decimal("100")).quantize(_CENT)


def _clean_sku(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        msg = "sku must be non-empty"
        raise ValueError(msg)
    return cleaned


class ConditionPayload(BaseModel):
    condition_type: ConditionType = Field(alias="conditionType")
    operator: ConditionOperator
    value: str = Field(min_length=1, max_length=128)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("value")
    @classmethod
    def _strip_value(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "condition value must be non-empty"
            raise ValueError(msg)
        return cleaned


class ConditionResponse(ConditionPayload):
    id: PositiveInt

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class PricingRuleBase(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    rule_type: RuleType = Field(alias="ruleType")
    status: RuleStatus = RuleStatus.DRAFT
    priority: RulePriority = RulePriority.MEDIUM
    min_price: Money | None = Field(default=None, alias="minPrice")
    max_price: Money | None = Field(default=None, alias="maxPrice")
    start_at: datetime | None = Field(default=None, alias="startAt")
    end_at: datetime | None = Field(default=None, alias="endAt")
    config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[ConditionPayload] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("sku")
    @classmethod
    def _clean_sku(cls, value: str) -> str:
        return _clean_sku(value)

    @field_validator("start_at", "end_at")
    @classmethod
    def _window_in_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class PricingRuleCreate(PricingRuleBase):
    pass


class PricingRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    status: RuleStatus | None = None
    priority: RulePriority | None = None
    min_price: Money | None = Field(default=None, alias="minPrice")
    max_price: Money | None = Field(default=None, alias="maxPrice")
    start_at: datetime | None = Field(default=None, alias="startAt")
    end_at: datetime | None = Field(default=None, alias="endAt")
    config: dict[str, Any] | None = None
    conditions: list[ConditionPayload] | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    @classmethod
    def _name_not_null(cls, value: str | None) -> str:
        if value is None:
            msg = "name cannot be cleared"
            raise ValueError(msg)
        return value

    @field_validator("start_at", "end_at")
    @classmethod
    def _window_in_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class PricingRuleResponse(PricingRuleBase):
    id: PositiveInt
    conditions: list[ConditionResponse] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class PricingRuleListResponse(BaseModel):
    items: list[PricingRuleResponse]
    total: int


class PricingContextPayload(BaseModel):
    """Evaluation signals supplied by the caller; prices in major units."""

    now: datetime | None = None
    stock_level: int | None = Field(default=None, ge=0, alias="stockLevel")
    views_last_24h: int = Field(default=0, ge=0, alias="viewsLast24h")
    purchases_last_24h: int = Field(default=0, ge=0, alias="purchasesLast24h")
    competitor_prices: list[Money] = Field(default_factory=list, alias="competitorPrices")
    quantity: int | None = Field(default=None, ge=1)
    predicted_price: Money | None = Field(default=None, alias="predictedPrice")

    model_config = ConfigDict(populate_by_name=True)

    def to_context(self) -> PricingContext:
        now = self.now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return PricingContext(
            now=now,
            stock_level=self.stock_level,
            views_last_24h=self.views_last_24h,
            purchases_last_24h=self.purchases_last_24h,
            competitor_prices=tuple(to_cents(price) for price in self.competitor_prices),
            quantity=self.quantity,
            predicted_price=to_cents(self.predicted_price) if self.predicted_price is not None else None,
        )


class ConditionResultResponse(BaseModel):
    condition_type: ConditionType = Field(alias="conditionType")
    operator: ConditionOperator
    value: str
    met: bool

    model_config = ConfigDict(populate_by_name=True)


class PricePreviewResponse(BaseModel):
    rule_id: int = Field(alias="ruleId")
    sku: str
    currency: str
    applicable: bool
    would_apply: bool = Field(alias="wouldApply")
    current_price: Decimal = Field(alias="currentPrice")
    new_price: Decimal = Field(alias="newPrice")
    formula_price: Decimal = Field(alias="formulaPrice")
    difference: Decimal
    change_percentage: Decimal = Field(alias="changePercentage")
    min_price: Decimal | None = Field(default=None, alias="minPrice")
    max_price: Decimal | None = Field(default=None, alias="maxPrice")
    conditions: list[ConditionResultResponse]
    config_error: str | None = Field(default=None, alias="configError")

    model_config = ConfigDict(populate_by_name=True)


class PriceChangeResponse(BaseModel):
    id: PositiveInt
    sku: str
    rule_id: int | None = Field(default=None, alias="ruleId")
    change_type: str = Field(alias="changeType")
    old_price: Decimal = Field(alias="oldPrice")
    new_price: Decimal = Field(alias="newPrice")
    change_percentage: Decimal = Field(alias="changePercentage")
    direction: str
    reason: str
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class PriceChangeListResponse(BaseModel):
    items: list[PriceChangeResponse]
    total: int


class RuleApplicationResponse(BaseModel):
    rule_id: int = Field(alias="ruleId")
    sku: str
    applied: bool
    price: Decimal
    change: PriceChangeResponse | None = None

    model_config = ConfigDict(populate_by_name=True)


class BatchApplyRequest(BaseModel):
    contexts: list[PricingContextPayload] = Field(min_length=1)


class BatchItemResponse(BaseModel):
    index: int
    success: bool
    change: PriceChangeResponse | None = None
    error: str | None = None


class BatchApplyResponse(BaseModel):
    rule_id: int = Field(alias="ruleId")
    succeeded: int
    failed: int
    results: list[BatchItemResponse]

    model_config = ConfigDict(populate_by_name=True)


class RollbackRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class ContextValidationResponse(BaseModel):
    valid: bool
    errors: list[str]
    warnings: list[str]


class ProductPriceUpdate(BaseModel):
    price: Money
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    reason: str | None = Field(default=None, max_length=200)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().upper()


class ProductPriceResponse(BaseModel):
    sku: str
    currency: str
    price: Decimal
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class ManualPriceResponse(ProductPriceResponse):
    change: PriceChangeResponse | None = None


class PriceEvaluationResponse(BaseModel):
    sku: str
    currency: str
    price: Decimal
    rule_id: int | None = Field(default=None, alias="ruleId")
    applied: bool
    change: PriceChangeResponse | None = None

    model_config = ConfigDict(populate_by_name=True)


class PriceChangeSummaryResponse(BaseModel):
    sku: str
    total: int
    rule_driven: int = Field(alias="ruleDriven")
    manual: int
    rollbacks: int
    increases: int
    decreases: int
    average_change_percentage: Decimal = Field(alias="averageChangePercentage")
    volatility: Decimal

    model_config = ConfigDict(populate_by_name=True)
