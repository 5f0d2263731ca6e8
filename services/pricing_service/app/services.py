"""Service layer for pricing rule application and the price change log."""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence

from services.common import get_tracer

from .calculator import PriceCalculator
from .domain import (
    ChangeType,
    ConditionOperator,
    ConditionType,
    PriceEvaluation,
    PricingContext,
    RuleCondition,
    RuleDefinition,
    RulePriority,
    RuleStatus,
    RuleType,
    as_utc,
)
from .errors import (
    BatchTooLarge,
    InvalidRuleConfig,
    NothingToRollback,
    PricingError,
    ProductPriceNotFound,
    RuleNotApplicable,
)
from .events import PricingEventPublisher, change_percentage
from .metrics import (
    PRICE_CHANGES_TOTAL,
    PRICING_RULE_CONFIG_ERRORS_TOTAL,
    PRICING_RULE_EVALUATIONS_TOTAL,
    PRICING_RULES_NOT_APPLICABLE_TOTAL,
    price_direction,
)
from .models import PriceChange, PricingRule, ProductPrice
from .prediction import PricePredictionClient
from .repository import PricingRepository
from .rule_configs import parse_rule_config
from .selection import condition_met, is_applicable, select_rule

logger = logging.getLogger(__name__)

_QUANTITY_RULES = (RuleType.BUNDLE, RuleType.VOLUME)
_TWO_PLACES = Decimal("0.01")


def definition_from_model(rule: PricingRule) -> RuleDefinition:
    """Build the immutable evaluation view of a stored rule."""

    return RuleDefinition(
        rule_type=RuleType(rule.rule_type),
        config=dict(rule.config or {}),
        min_price_cents=rule.min_price_cents,
        max_price_cents=rule.max_price_cents,
        id=rule.id,
        name=rule.name,
        status=RuleStatus(rule.status),
        priority=RulePriority(rule.priority),
        start_at=rule.start_at,
        end_at=rule.end_at,
        conditions=tuple(
            RuleCondition(
                condition_type=ConditionType(condition.condition_type),
                operator=ConditionOperator(condition.operator),
                value=condition.value,
                id=condition.id,
            )
            for condition in rule.conditions
        ),
        created_at=rule.created_at,
    )


@dataclass(frozen=True, slots=True)
class ConditionOutcome:
    condition: RuleCondition
    met: bool


@dataclass(frozen=True, slots=True)
class PricePreview:
    """What applying a rule right now would do, without writing anything."""

    rule_id: int
    sku: str
    currency: str
    applicable: bool
    current_price: int
    new_price: int
    formula_price: int
    min_price_cents: int | None
    max_price_cents: int | None
    conditions: list[ConditionOutcome]
    config_error: str | None = None

    @property
    def difference(self) -> int:
        return self.new_price - self.current_price

    @property
    def change_percentage(self) -> Decimal:
        return change_percentage(self.current_price, self.new_price)

    @property
    def would_apply(self) -> bool:
        return self.applicable and self.new_price != self.current_price


@dataclass(frozen=True, slots=True)
class BatchItemResult:
    index: int
    success: bool
    change: PriceChange | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ContextValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class ChangeSummary:
    sku: str
    total: int
    rule_driven: int
    manual: int
    rollbacks: int
    increases: int
    decreases: int
    average_change_percentage: Decimal
    volatility: Decimal


@dataclass(frozen=True, slots=True)
class BestRuleOutcome:
    rule: PricingRule
    change: PriceChange | None


class PricingService:
    """High-level orchestration for applying pricing rules to product prices."""

    def __init__(
        self,
        repository: PricingRepository,
        *,
        calculator: PriceCalculator | None = None,
        prediction_client: PricePredictionClient | None = None,
        event_publisher: PricingEventPublisher | None = None,
        max_batch_size: int = 100,
        default_currency: str = "USD",
    ) -> None:
        self.repository = repository
        self.calculator = calculator or PriceCalculator()
        self.prediction_client = prediction_client
        self.event_publisher = event_publisher
        self.max_batch_size = max_batch_size
        self.default_currency = default_currency

    async def get_product_price(self, sku: str) -> ProductPrice:
        product_price = await self.repository.get_product_price(sku)
        if product_price is None:
            raise ProductPriceNotFound(sku)
        return product_price

    async def preview_rule(self, rule: PricingRule, context: PricingContext) -> PricePreview:
        product_price = await self.get_product_price(rule.sku)
        definition = definition_from_model(rule)
        context = await self._with_prediction(definition, rule.sku, product_price.price_cents, context)
        evaluation = self.calculator.evaluate(product_price.price_cents, definition, context)
        return PricePreview(
            rule_id=rule.id,
            sku=rule.sku,
            currency=product_price.currency,
            applicable=is_applicable(definition, context),
            current_price=product_price.price_cents,
            new_price=evaluation.price,
            formula_price=evaluation.formula_price,
            min_price_cents=definition.min_price_cents,
            max_price_cents=definition.max_price_cents,
            conditions=[
                ConditionOutcome(condition=condition, met=condition_met(condition, context))
                for condition in definition.conditions
            ],
            config_error=evaluation.config_error,
        )

    async def apply_rule(self, rule: PricingRule, context: PricingContext) -> PriceChange | None:
        """Apply ``rule`` to its SKU and return the recorded change.

        Returns ``None`` when the rule leaves the price where it is. Raises
        :class:`RuleNotApplicable` for inactive, out-of-window or unmet rules.
        """

        definition = definition_from_model(rule)
        if not is_applicable(definition, context):
            PRICING_RULES_NOT_APPLICABLE_TOTAL.labels(rule_type=definition.rule_type.value).inc()
            raise RuleNotApplicable(f"rule {rule.id} does not apply in this context")

        product_price = await self.get_product_price(rule.sku)
        old_price = product_price.price_cents
        context = await self._with_prediction(definition, rule.sku, old_price, context)

        with get_tracer().start_as_current_span("pricing.apply_rule") as span:
            span.set_attribute("pricing.rule_id", rule.id)
            span.set_attribute("pricing.rule_type", definition.rule_type.value)
            span.set_attribute("pricing.sku", rule.sku)
            evaluation = self.calculator.evaluate(old_price, definition, context)
            self._record_evaluation(definition, evaluation)
            span.set_attribute("pricing.old_price", old_price)
            span.set_attribute("pricing.new_price", evaluation.price)
            if not evaluation.changed:
                return None

            metadata: dict[str, Any] = {
                "context": context.snapshot(),
                "ruleType": definition.rule_type.value,
                "ruleId": rule.id,
            }
            change = await self._record_change(
                product_price,
                rule_id=rule.id,
                change_type=ChangeType.RULE,
                new_price=evaluation.price,
                reason=f"Applied rule: {rule.name}",
                metadata=metadata,
            )
        logger.info(
            "Applied pricing rule to %s: %s -> %s",
            rule.sku,
            old_price,
            evaluation.price,
            extra={"rule_id": rule.id},
        )
        return change

    async def apply_best_rule(self, sku: str, context: PricingContext) -> BestRuleOutcome | None:
        await self.get_product_price(sku)
        rules = await self.repository.list_active_rules_for_sku(sku)
        by_id = {rule.id: rule for rule in rules}
        selected = select_rule((definition_from_model(rule) for rule in rules), context)
        if selected is None:
            return None
        rule = by_id[selected.id]
        change = await self.apply_rule(rule, context)
        return BestRuleOutcome(rule=rule, change=change)

    async def batch_apply(self, rule: PricingRule, contexts: Sequence[PricingContext]) -> list[BatchItemResult]:
        if len(contexts) > self.max_batch_size:
            raise BatchTooLarge(len(contexts), self.max_batch_size)

        results: list[BatchItemResult] = []
        for index, context in enumerate(contexts):
            try:
                change = await self.apply_rule(rule, context)
            except PricingError as exc:
                results.append(BatchItemResult(index=index, success=False, error=str(exc)))
                continue
            results.append(BatchItemResult(index=index, success=True, change=change))
        return results

    async def rollback_rule(self, rule: PricingRule, reason: str | None = None) -> PriceChange:
        latest = await self.repository.latest_rule_change(rule_id=rule.id, sku=rule.sku)
        if latest is None or latest.change_type == ChangeType.ROLLBACK.value:
            raise NothingToRollback(f"rule {rule.id} has no price change to roll back")

        product_price = await self.get_product_price(rule.sku)
        change = await self._record_change(
            product_price,
            rule_id=rule.id,
            change_type=ChangeType.ROLLBACK,
            new_price=latest.old_price_cents,
            reason=f"Rollback: {reason}" if reason else f"Rollback of rule: {rule.name}",
            metadata={"rollback": True, "originalChangeId": latest.id},
        )
        logger.info(
            "Rolled back pricing rule on %s to %s",
            rule.sku,
            latest.old_price_cents,
            extra={"rule_id": rule.id},
        )
        return change

    def validate_context(self, rule: PricingRule, context: PricingContext) -> ContextValidation:
        rule_type = RuleType(rule.rule_type)
        errors: list[str] = []
        warnings: list[str] = []

        try:
            parse_rule_config(rule_type, rule.config)
        except InvalidRuleConfig as exc:
            errors.append(f"rule configuration is invalid: {exc.detail}")

        if rule_type in _QUANTITY_RULES and (context.quantity is None or context.quantity < 1):
            errors.append(f"quantity of at least 1 is required for {rule_type.value} rules")
        if rule_type is RuleType.INVENTORY_BASED and context.stock_level is None:
            errors.append("stock level is required for inventory_based rules")
        if rule_type is RuleType.COMPETITOR_BASED and not context.competitor_prices:
            warnings.append("no competitor prices supplied; the base price will be kept")
        if rule_type is RuleType.DYNAMIC_AI and context.predicted_price is None and not self._prediction_enabled:
            errors.append("a predicted price is required when no prediction service is configured")

        return ContextValidation(errors=errors, warnings=warnings)

    async def set_manual_price(
        self,
        sku: str,
        *,
        price_cents: int,
        currency: str | None = None,
        reason: str | None = None,
    ) -> tuple[ProductPrice, PriceChange | None]:
        product_price = await self.repository.get_product_price(sku)
        if product_price is None:
            product_price = await self.repository.create_product_price(
                sku=sku,
                currency=currency or self.default_currency,
                price_cents=price_cents,
            )
            return product_price, None

        if currency is not None and currency != product_price.currency:
            product_price = await self.repository.set_product_price(
                product_price, price_cents=product_price.price_cents, currency=currency
            )
        if price_cents == product_price.price_cents:
            return product_price, None

        change = await self._record_change(
            product_price,
            rule_id=None,
            change_type=ChangeType.MANUAL,
            new_price=price_cents,
            reason=reason or "Manual price update",
            metadata=None,
        )
        return product_price, change

    async def list_changes(
        self,
        sku: str,
        *,
        limit: int,
        offset: int,
        since: datetime | None = None,
    ) -> tuple[list[PriceChange], int]:
        if since is not None:
            since = as_utc(since)
        return await self.repository.list_price_changes(sku=sku, limit=limit, offset=offset, since=since)

    async def summarize_changes(self, sku: str, since: datetime | None = None) -> ChangeSummary:
        if since is not None:
            since = as_utc(since)
        changes = await self.repository.all_price_changes(sku=sku, since=since)
        percentages = [change_percentage(change.old_price_cents, change.new_price_cents) for change in changes]

        average = Decimal("0")
        if percentages:
            average = sum(percentages, Decimal("0")) / len(percentages)
        volatility = Decimal("0")
        if len(percentages) >= 2:
            volatility = statistics.pstdev(percentages)

        by_type = [change.change_type for change in changes]
        return ChangeSummary(
            sku=sku,
            total=len(changes),
            rule_driven=by_type.count(ChangeType.RULE.value),
            manual=by_type.count(ChangeType.MANUAL.value),
            rollbacks=by_type.count(ChangeType.ROLLBACK.value),
            increases=sum(1 for change in changes if change.new_price_cents > change.old_price_cents),
            decreases=sum(1 for change in changes if change.new_price_cents < change.old_price_cents),
            average_change_percentage=average.quantize(_TWO_PLACES),
            volatility=volatility.quantize(_TWO_PLACES),
        )

    @property
    def _prediction_enabled(self) -> bool:
        return self.prediction_client is not None and self.prediction_client.configured

    async def _with_prediction(
        self,
        definition: RuleDefinition,
        sku: str,
        base_price: int,
        context: PricingContext,
    ) -> PricingContext:
        if definition.rule_type is not RuleType.DYNAMIC_AI or context.predicted_price is not None:
            return context
        if self.prediction_client is None:
            return context
        predicted = await self.prediction_client.optimal_price(sku, base_price, context)
        if predicted is None:
            return context
        return replace(context, predicted_price=predicted)

    def _record_evaluation(self, definition: RuleDefinition, evaluation: PriceEvaluation) -> None:
        rule_type = definition.rule_type.value
        if evaluation.failed_closed:
            PRICING_RULE_CONFIG_ERRORS_TOTAL.labels(rule_type=rule_type).inc()
            outcome = "failed_closed"
        elif evaluation.changed:
            outcome = "changed"
        else:
            outcome = "unchanged"
        PRICING_RULE_EVALUATIONS_TOTAL.labels(rule_type=rule_type, outcome=outcome).inc()

    async def _record_change(
        self,
        product_price: ProductPrice,
        *,
        rule_id: int | None,
        change_type: ChangeType,
        new_price: int,
        reason: str,
        metadata: dict[str, Any] | None,
    ) -> PriceChange:
        old_price = product_price.price_cents
        change = await self.repository.add_price_change(
            sku=product_price.sku,
            rule_id=rule_id,
            change_type=change_type.value,
            old_price_cents=old_price,
            new_price_cents=new_price,
            reason=reason,
            metadata=metadata,
        )
        await self.repository.set_product_price(product_price, price_cents=new_price)
        PRICE_CHANGES_TOTAL.labels(
            change_type=change_type.value,
            direction=price_direction(old_price, new_price),
        ).inc()
        if self.event_publisher is not None:
            await self.event_publisher.price_changed(change, currency=product_price.currency)
        return change
