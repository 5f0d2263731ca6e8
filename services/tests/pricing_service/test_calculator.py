import logging
from datetime import datetime, timezone
from typing import Any

import pytest

from services.pricing_service.app.calculator import PriceCalculator, apply_bounds, round_price
from services.pricing_service.app.domain import PricingContext, RuleDefinition, RuleType

_AFTERNOON = datetime(2024, 12, 3, 14, 30, tzinfo=timezone.utc)


def _rule(rule_type: RuleType, config: dict[str, Any] | None = None, **kwargs: Any) -> RuleDefinition:
    return RuleDefinition(rule_type=rule_type, config=config or {}, id=kwargs.pop("id", 7), **kwargs)


def _context(**kwargs: Any) -> PricingContext:
    kwargs.setdefault("now", _AFTERNOON)
    return PricingContext(**kwargs)


@pytest.fixture
def calculator() -> PriceCalculator:
    return PriceCalculator()


def test_happy_hour_discount_applies_inside_window(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.TIME_BASED, {"happy_hours": [14, 15], "happy_hour_discount": 20})

    assert calculator.calculate(1000, rule, _context()) == 800


def test_flash_sale_uses_default_discount_outside_happy_hours(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.TIME_BASED, {"happy_hours": [9], "flash_sale_active": True})

    assert calculator.calculate(1000, rule, _context()) == 700


def test_time_based_rule_without_match_keeps_base(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.TIME_BASED, {"happy_hours": [9]})

    assert calculator.calculate(1000, rule, _context()) == 1000


def test_low_stock_clearance_grows_with_scarcity(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.INVENTORY_BASED, {"low_stock_threshold": 10, "clearance_discount": 25})

    assert calculator.calculate(1000, rule, _context(stock_level=5)) == 650


def test_clearance_discount_is_capped_at_half(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.INVENTORY_BASED, {"low_stock_threshold": 30, "clearance_discount": 25})

    assert calculator.calculate(1000, rule, _context(stock_level=1)) == 500


@pytest.mark.parametrize("stock_level", [None, 0, 11])
def test_inventory_rule_ignores_empty_or_healthy_stock(calculator: PriceCalculator, stock_level: int | None) -> None:
    rule = _rule(RuleType.INVENTORY_BASED)

    assert calculator.calculate(1000, rule, _context(stock_level=stock_level)) == 1000


def test_high_demand_surges_price(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.DEMAND_BASED)

    assert calculator.calculate(1000, rule, _context(views_last_24h=600)) == 1150


def test_low_demand_discounts_price(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.DEMAND_BASED)

    assert calculator.calculate(1000, rule, _context()) == 900


def test_moderate_demand_keeps_base(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.DEMAND_BASED)

    assert calculator.calculate(1000, rule, _context(views_last_24h=100, purchases_last_24h=1)) == 1000


def test_undercut_lowest_competitor(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.COMPETITOR_BASED, {"competitor_strategy": "undercut", "undercut_percentage": 5})

    assert calculator.calculate(1000, rule, _context(competitor_prices=(1200, 900))) == 855


def test_match_lowest_never_raises_price(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.COMPETITOR_BASED, {"competitor_strategy": "match_lowest"})

    assert calculator.calculate(1000, rule, _context(competitor_prices=(1200, 900))) == 900
    assert calculator.calculate(1000, rule, _context(competitor_prices=(1200,))) == 1000


def test_match_average_floors_the_mean(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.COMPETITOR_BASED, {"competitor_strategy": "match_average"})

    assert calculator.calculate(1000, rule, _context(competitor_prices=(900, 1001))) == 950


def test_premium_marks_up_the_average(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.COMPETITOR_BASED, {"competitor_strategy": "premium"})

    assert calculator.calculate(1000, rule, _context(competitor_prices=(900, 1100))) == 1100


def test_empty_competitor_sample_keeps_base(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.COMPETITOR_BASED, {"competitor_strategy": "undercut"})

    assert calculator.calculate(1000, rule, _context()) == 1000


def test_seasonal_adjustment_accepts_string_month_keys(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.SEASONAL, {"seasonal_adjustments": {"12": 10, "1": -20}})

    assert calculator.calculate(1000, rule, _context()) == 1100
    january = _context(now=datetime(2025, 1, 10, tzinfo=timezone.utc))
    assert calculator.calculate(1000, rule, january) == 800
    june = _context(now=datetime(2025, 6, 10, tzinfo=timezone.utc))
    assert calculator.calculate(1000, rule, june) == 1000


@pytest.mark.parametrize(
    ("quantity", "expected"),
    [(None, 1000), (1, 1000), (3, 950), (5, 900), (9, 900), (10, 850), (40, 850)],
)
def test_bundle_tiers(calculator: PriceCalculator, quantity: int | None, expected: int) -> None:
    rule = _rule(RuleType.BUNDLE)

    assert calculator.calculate(1000, rule, _context(quantity=quantity)) == expected


def test_volume_picks_largest_qualifying_tier(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.VOLUME)

    assert calculator.calculate(1000, rule, _context(quantity=60)) == 900
    assert calculator.calculate(1000, rule, _context(quantity=100)) == 850
    assert calculator.calculate(1000, rule, _context(quantity=9)) == 1000


def test_volume_accepts_short_tier_keys(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.VOLUME, {"volume_tiers": [{"min": 2, "discount": 50}]})

    assert calculator.calculate(1000, rule, _context(quantity=2)) == 500


def test_ai_rule_uses_predicted_price(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.DYNAMIC_AI)

    assert calculator.calculate(1000, rule, _context(predicted_price=1234)) == 1234
    assert calculator.calculate(1000, rule, _context()) == 1000


def test_ai_rule_falls_back_when_predictor_fails(caplog: pytest.LogCaptureFixture) -> None:
    def _broken(rule: RuleDefinition, base_price: int, context: PricingContext) -> int | None:
        raise RuntimeError("model offline")

    calculator = PriceCalculator(predictor=_broken)
    rule = _rule(RuleType.DYNAMIC_AI)

    with caplog.at_level(logging.ERROR):
        assert calculator.calculate(1000, rule, _context()) == 1000
    assert "Price predictor failed" in caplog.text


def test_bounds_clamp_formula_result(calculator: PriceCalculator) -> None:
    floor_rule = _rule(RuleType.TIME_BASED, {"flash_sale_active": True}, min_price_cents=950)
    ceiling_rule = _rule(RuleType.DEMAND_BASED, max_price_cents=1050)

    assert calculator.calculate(1000, floor_rule, _context()) == 950
    assert calculator.calculate(1000, ceiling_rule, _context(views_last_24h=600)) == 1050


def test_rounding_is_half_up(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.TIME_BASED, {"happy_hours": [14], "happy_hour_discount": 25})

    assert calculator.calculate(10, rule, _context()) == 8
    assert calculator.calculate(1001, _rule(RuleType.BUNDLE), _context(quantity=2)) == 951


def test_price_never_goes_negative(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.SEASONAL, {"seasonal_adjustments": {"12": -100}})

    assert calculator.calculate(1000, rule, _context()) == 0


def test_malformed_config_fails_closed_and_logs_rule(
    calculator: PriceCalculator, caplog: pytest.LogCaptureFixture
) -> None:
    rule = _rule(
        RuleType.TIME_BASED,
        {"happy_hours": [14], "happy_hour_discount": "lots"},
        id=42,
        min_price_cents=2000,
    )

    with caplog.at_level(logging.WARNING):
        evaluation = calculator.evaluate(1000, rule, _context())

    assert evaluation.price == 1000
    assert evaluation.failed_closed
    assert "happy_hour_discount" in (evaluation.config_error or "")
    warning = next(record for record in caplog.records if record.levelno == logging.WARNING)
    assert getattr(warning, "rule_id") == 42


def test_unknown_competitor_strategy_fails_closed(calculator: PriceCalculator) -> None:
    rule = _rule(RuleType.COMPETITOR_BASED, {"competitor_strategy": "outbid"})

    evaluation = calculator.evaluate(1000, rule, _context(competitor_prices=(900,)))

    assert evaluation.price == 1000
    assert evaluation.failed_closed


def test_negative_base_price_is_rejected(calculator: PriceCalculator) -> None:
    with pytest.raises(ValueError):
        calculator.calculate(-1, _rule(RuleType.BUNDLE), _context())


def test_evaluation_is_deterministic_and_keeps_rule_intact(calculator: PriceCalculator) -> None:
    config = {"competitor_strategy": "undercut", "undercut_percentage": 5}
    rule = _rule(RuleType.COMPETITOR_BASED, config)
    context = _context(competitor_prices=(900, 950))

    first = calculator.evaluate(1000, rule, context)
    second = calculator.evaluate(1000, rule, context)

    assert first == second
    assert rule.config == {"competitor_strategy": "undercut", "undercut_percentage": 5}


def test_output_stays_within_bounds_for_every_rule_type(calculator: PriceCalculator) -> None:
    context = _context(
        stock_level=3,
        views_last_24h=900,
        competitor_prices=(10, 5000),
        quantity=120,
        predicted_price=99999,
    )
    for rule_type in RuleType:
        rule = _rule(rule_type, min_price_cents=400, max_price_cents=1200)
        price = calculator.calculate(1000, rule, context)
        assert isinstance(price, int)
        assert 400 <= price <= 1200


def test_round_and_bound_helpers() -> None:
    from decimal import Decimal

    assert round_price(Decimal("849.5")) == 850
    assert round_price(Decimal("-3")) == 0
    assert apply_bounds(500, 600, None) == 600
    assert apply_bounds(500, None, 400) == 400
    assert apply_bounds(500, None, None) == 500
