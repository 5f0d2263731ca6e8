"""Rule applicability checks and priority-based rule selection."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from .domain import (
    ConditionOperator,
    ConditionType,
    PricingContext,
    RuleCondition,
    RuleDefinition,
    RuleStatus,
    as_utc,
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _signal(condition_type: ConditionType, context: PricingContext) -> Decimal | None:
    if condition_type is ConditionType.TIME_OF_DAY:
        return Decimal(context.now.hour)
    if condition_type is ConditionType.DAY_OF_WEEK:
        # Sunday = 0 ... Saturday = 6
        return Decimal((context.now.weekday() + 1) % 7)
    if condition_type is ConditionType.STOCK_LEVEL:
        return None if context.stock_level is None else Decimal(context.stock_level)
    if condition_type is ConditionType.VIEW_COUNT:
        return Decimal(context.views_last_24h)
    if condition_type is ConditionType.SALES_VELOCITY:
        return Decimal(context.purchases_last_24h)
    if condition_type is ConditionType.COMPETITOR_PRICE:
        return Decimal(min(context.competitor_prices)) if context.competitor_prices else None
    if condition_type is ConditionType.SEASON:
        return Decimal(context.now.month)
    return None


def _parse_values(raw: str) -> list[Decimal]:
    return [Decimal(part.strip()) for part in raw.split(",") if part.strip()]


def condition_met(condition: RuleCondition, context: PricingContext) -> bool:
    """Return True when ``context`` satisfies ``condition``.

    A missing signal (no stock level, no competitor prices) or a value that
    cannot be parsed for the operator means the condition is not met.
    """

    observed = _signal(condition.condition_type, context)
    if observed is None:
        return False
    try:
        values = _parse_values(condition.value)
    except InvalidOperation:
        return False
    if not values:
        return False

    operator = condition.operator
    if operator is ConditionOperator.EQUALS:
        return observed == values[0]
    if operator is ConditionOperator.NOT_EQUALS:
        return observed != values[0]
    if operator is ConditionOperator.GREATER_THAN:
        return observed > values[0]
    if operator is ConditionOperator.LESS_THAN:
        return observed < values[0]
    if operator is ConditionOperator.BETWEEN:
        if len(values) != 2:
            return False
        low, high = sorted(values)
        return low <= observed <= high
    if operator is ConditionOperator.IN_LIST:
        return observed in values
    return False


def within_window(rule: RuleDefinition, at: datetime) -> bool:
    at = as_utc(at)
    if rule.start_at is not None and as_utc(rule.start_at) > at:
        return False
    if rule.end_at is not None and as_utc(rule.end_at) < at:
        return False
    return True


def is_applicable(rule: RuleDefinition, context: PricingContext) -> bool:
    """Active, inside its date window, and every condition met."""

    if rule.status is not RuleStatus.ACTIVE:
        return False
    if not within_window(rule, context.now):
        return False
    return all(condition_met(condition, context) for condition in rule.conditions)


def _selection_key(rule: RuleDefinition) -> tuple[int, datetime, int]:
    created = as_utc(rule.created_at) if rule.created_at is not None else _EPOCH
    return (rule.priority.rank, created, rule.id or 0)


def select_rule(rules: Iterable[RuleDefinition], context: PricingContext) -> RuleDefinition | None:
    """Pick the rule to apply: highest priority, then newest, then highest id."""

    candidates = [rule for rule in rules if is_applicable(rule, context)]
    if not candidates:
        return None
    return max(candidates, key=_selection_key)
