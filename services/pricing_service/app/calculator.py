"""Rule evaluation: turn a base price, one rule and a context into a price.

Everything here is synchronous and free of I/O. A :class:`PriceCalculator`
holds no per-call state, so one instance can serve concurrent requests.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from .domain import PriceEvaluation, PricingContext, RuleDefinition, RuleType
from .errors import InvalidRuleConfig
from .rule_configs import (
    BundleConfig,
    CompetitorBasedConfig,
    DemandBasedConfig,
    InventoryBasedConfig,
    RuleConfig,
    SeasonalConfig,
    TimeBasedConfig,
    VolumeConfig,
    parse_rule_config,
)

logger = logging.getLogger(__name__)

PricePredictor = Callable[[RuleDefinition, int, PricingContext], "int | None"]

_HUNDRED = Decimal("100")
_ONE = Decimal("1")
MAX_CLEARANCE_DISCOUNT = Decimal("50")
CLEARANCE_STEP_PER_UNIT = Decimal("2")
VIEW_WEIGHT = Decimal("0.1")
PURCHASE_WEIGHT = Decimal("10")


def _discount(price: Decimal, percent: Decimal) -> Decimal:
    return price * (_ONE - percent / _HUNDRED)


def _markup(price: Decimal, percent: Decimal) -> Decimal:
    return price * (_ONE + percent / _HUNDRED)


def round_price(value: Decimal) -> int:
    """Round to the nearest minor unit, halves away from zero, never below zero."""

    if value < 0:
        return 0
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def apply_bounds(price: int, min_price: int | None, max_price: int | None) -> int:
    if min_price is not None:
        price = max(price, min_price)
    if max_price is not None:
        price = min(price, max_price)
    return max(price, 0)


def context_prediction(rule: RuleDefinition, base_price: int, context: PricingContext) -> int | None:
    """Default predictor: use the prediction already attached to the context."""

    return context.predicted_price


class PriceCalculator:
    """Evaluates a single pricing rule.

    Selecting which rule applies when several are active is left to
    :func:`services.pricing_service.app.selection.select_rule`; percentages are
    never stacked across rules here.
    """

    def __init__(self, predictor: PricePredictor | None = None) -> None:
        self._predictor = predictor or context_prediction
        self._formulas: dict[RuleType, Callable[[Decimal, RuleConfig, RuleDefinition, PricingContext], Decimal]] = {
            RuleType.TIME_BASED: self._time_based,
            RuleType.INVENTORY_BASED: self._inventory_based,
            RuleType.DEMAND_BASED: self._demand_based,
            RuleType.COMPETITOR_BASED: self._competitor_based,
            RuleType.SEASONAL: self._seasonal,
            RuleType.BUNDLE: self._bundle,
            RuleType.VOLUME: self._volume,
            RuleType.DYNAMIC_AI: self._ai_optimized,
        }

    def calculate(self, base_price: int, rule: RuleDefinition, context: PricingContext) -> int:
        return self.evaluate(base_price, rule, context).price

    def evaluate(self, base_price: int, rule: RuleDefinition, context: PricingContext) -> PriceEvaluation:
        if base_price < 0:
            msg = "base price must be non-negative"
            raise ValueError(msg)

        try:
            config = parse_rule_config(rule.rule_type, rule.config)
        except InvalidRuleConfig as exc:
            logger.warning(
                "Pricing rule has malformed configuration, keeping base price: %s",
                exc.detail,
                extra={"rule_id": rule.id},
            )
            return PriceEvaluation(
                base_price=base_price,
                price=base_price,
                formula_price=base_price,
                config_error=exc.detail,
            )

        formula = self._formulas[rule.rule_type]
        formula_price = round_price(formula(Decimal(base_price), config, rule, context))
        price = apply_bounds(formula_price, rule.min_price_cents, rule.max_price_cents)
        logger.debug(
            "Evaluated %s rule: %s -> %s (formula %s)",
            rule.rule_type.value,
            base_price,
            price,
            formula_price,
            extra={"rule_id": rule.id},
        )
        return PriceEvaluation(base_price=base_price, price=price, formula_price=formula_price)

    def _time_based(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, TimeBasedConfig)
        if context.now.hour in config.happy_hours:
            return _discount(base, config.happy_hour_discount)
        if config.flash_sale_active:
            return _discount(base, config.flash_sale_discount)
        return base

    def _inventory_based(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, InventoryBasedConfig)
        stock = context.stock_level or 0
        if stock <= 0 or stock > config.low_stock_threshold:
            return base
        percent = config.clearance_discount + (config.low_stock_threshold - stock) * CLEARANCE_STEP_PER_UNIT
        return _discount(base, min(percent, MAX_CLEARANCE_DISCOUNT))

    def _demand_based(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, DemandBasedConfig)
        score = context.views_last_24h * VIEW_WEIGHT + context.purchases_last_24h * PURCHASE_WEIGHT
        if score > config.high_demand_threshold:
            return _markup(base, config.surge_percentage)
        if score < config.low_demand_threshold:
            return _discount(base, config.low_demand_discount)
        return base

    def _competitor_based(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, CompetitorBasedConfig)
        prices = context.competitor_prices
        if not prices:
            return base
        lowest = Decimal(min(prices))
        average = Decimal(sum(prices) // len(prices))

        strategy = config.competitor_strategy
        if strategy == "match_lowest":
            return min(lowest, base)
        if strategy == "undercut":
            return _discount(lowest, config.undercut_percentage)
        if strategy == "match_average":
            return average
        return _markup(average, config.premium_percentage)

    def _seasonal(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, SeasonalConfig)
        adjustment = config.seasonal_adjustments.get(context.now.month)
        if adjustment is None:
            return base
        return _markup(base, adjustment)

    def _bundle(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, BundleConfig)
        quantity = context.quantity or 1
        if quantity >= 10:
            percent = config.bundle_discount_tier3
        elif quantity >= 5:
            percent = config.bundle_discount_tier2
        elif quantity >= 2:
            percent = config.bundle_discount_tier1
        else:
            return base
        return _discount(base, percent)

    def _volume(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        assert isinstance(config, VolumeConfig)
        quantity = context.quantity or 1
        qualifying = [tier for tier in config.volume_tiers if quantity >= tier.minimum_quantity]
        if not qualifying:
            return base
        tier = max(qualifying, key=lambda candidate: candidate.minimum_quantity)
        return _discount(base, tier.discount_percent)

    def _ai_optimized(
        self, base: Decimal, config: RuleConfig, rule: RuleDefinition, context: PricingContext
    ) -> Decimal:
        try:
            predicted = self._predictor(rule, int(base), context)
        except Exception:
            logger.exception("Price predictor failed, keeping base price", extra={"rule_id": rule.id})
            return base
        if predicted is None or predicted < 0:
            return base
        return Decimal(predicted)
