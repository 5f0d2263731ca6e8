"""Typed configuration for each pricing rule type.

Rules are stored with a free-form JSON configuration. Before evaluation the
map is validated against the model for the rule's type, which supplies the
defaults merchants rely on (a time-based rule without ``happy_hour_discount``
discounts 20%, and so on). Unknown keys are ignored.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .domain import RuleType, as_utc
from .errors import InvalidRuleConfig, InvalidRuleDefinition

Percent = Annotated[Decimal, Field(ge=Decimal("0"), le=Decimal("100"))]
Markup = Annotated[Decimal, Field(ge=Decimal("0"))]
Hour = Annotated[int, Field(ge=0, le=23)]
Month = Annotated[int, Field(ge=1, le=12)]
SignedPercent = Annotated[Decimal, Field(ge=Decimal("-100"))]


class _RuleConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class TimeBasedConfig(_RuleConfig):
    happy_hours: list[Hour] = Field(default_factory=list)
    happy_hour_discount: Percent = Decimal("20")
    flash_sale_active: bool = False
    flash_sale_discount: Percent = Decimal("30")


class InventoryBasedConfig(_RuleConfig):
    low_stock_threshold: int = Field(default=10, ge=0)
    clearance_discount: Percent = Decimal("25")


class DemandBasedConfig(_RuleConfig):
    high_demand_threshold: Markup = Decimal("50")
    low_demand_threshold: Markup = Decimal("5")
    surge_percentage: Markup = Decimal("15")
    low_demand_discount: Percent = Decimal("10")


class CompetitorBasedConfig(_RuleConfig):
    competitor_strategy: Literal["match_lowest", "undercut", "match_average", "premium"] = "match_lowest"
    undercut_percentage: Percent = Decimal("5")
    premium_percentage: Markup = Decimal("10")


class SeasonalConfig(_RuleConfig):
    # JSON object keys arrive as strings ("12"); lax validation turns them into ints.
    seasonal_adjustments: dict[Month, SignedPercent] = Field(default_factory=dict)


class BundleConfig(_RuleConfig):
    bundle_discount_tier1: Percent = Decimal("5")
    bundle_discount_tier2: Percent = Decimal("10")
    bundle_discount_tier3: Percent = Decimal("15")


class VolumeTier(BaseModel):
    minimum_quantity: int = Field(ge=1, validation_alias=AliasChoices("minimum_quantity", "min"))
    discount_percent: Percent = Field(validation_alias=AliasChoices("discount_percent", "discount"))

    model_config = ConfigDict(frozen=True, populate_by_name=True)


def _default_volume_tiers() -> list[VolumeTier]:
    return [
        VolumeTier(minimum_quantity=10, discount_percent=Decimal("5")),
        VolumeTier(minimum_quantity=50, discount_percent=Decimal("10")),
        VolumeTier(minimum_quantity=100, discount_percent=Decimal("15")),
    ]


class VolumeConfig(_RuleConfig):
    volume_tiers: list[VolumeTier] = Field(default_factory=_default_volume_tiers)


class DynamicAIConfig(_RuleConfig):
    pass


RuleConfig = Union[
    TimeBasedConfig,
    InventoryBasedConfig,
    DemandBasedConfig,
    CompetitorBasedConfig,
    SeasonalConfig,
    BundleConfig,
    VolumeConfig,
    DynamicAIConfig,
]

RULE_CONFIG_MODELS: dict[RuleType, type[_RuleConfig]] = {
    RuleType.TIME_BASED: TimeBasedConfig,
    RuleType.INVENTORY_BASED: InventoryBasedConfig,
    RuleType.DEMAND_BASED: DemandBasedConfig,
    RuleType.COMPETITOR_BASED: CompetitorBasedConfig,
    RuleType.SEASONAL: SeasonalConfig,
    RuleType.BUNDLE: BundleConfig,
    RuleType.VOLUME: VolumeConfig,
    RuleType.DYNAMIC_AI: DynamicAIConfig,
}


def parse_rule_config(rule_type: RuleType, raw: Mapping[str, Any] | None) -> RuleConfig:
    """Validate ``raw`` for ``rule_type`` or raise :class:`InvalidRuleConfig`."""

    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise InvalidRuleConfig(rule_type.value, "configuration must be an object")
    model = RULE_CONFIG_MODELS[rule_type]
    try:
        return model.model_validate(dict(raw))  # type: ignore[return-value]
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
            for error in exc.errors()
        )
        raise InvalidRuleConfig(rule_type.value, errors) from exc


def validate_rule_definition(
    rule_type: RuleType,
    *,
    min_price_cents: int | None,
    max_price_cents: int | None,
    start_at: datetime | None,
    end_at: datetime | None,
    config: Mapping[str, Any] | None,
) -> None:
    """Reject a rule whose bounds, window or configuration cannot work together."""

    for label, bound in (("min price", min_price_cents), ("max price", max_price_cents)):
        if bound is not None and bound < 0:
            raise InvalidRuleDefinition(f"{label} must be non-negative")
    if min_price_cents is not None and max_price_cents is not None and min_price_cents > max_price_cents:
        raise InvalidRuleDefinition("min price must not exceed max price")
    if start_at is not None and end_at is not None and as_utc(start_at) > as_utc(end_at):
        raise InvalidRuleDefinition("start must not be after end")
    parse_rule_config(rule_type, config)
