from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from prometheus_client import REGISTRY

from services.common import create_schema, dispose_engines, get_session_factory
from services.common.kafka import KafkaConsumerStub, KafkaProducerStub
from services.pricing_service.app.domain import PricingContext
from services.pricing_service.app.errors import (
    BatchTooLarge,
    NothingToRollback,
    ProductPriceNotFound,
    RuleNotApplicable,
)
from services.pricing_service.app.events import PRICE_CHANGED_TOPIC, PricingEventPublisher
from services.pricing_service.app.models import Base, PriceChange, PricingRule
from services.pricing_service.app.repository import PricingRepository
from services.pricing_service.app.services import PricingService

_NOW = datetime(2024, 12, 3, 14, 30, tzinfo=timezone.utc)


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


class _RecordingProducer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str | None, dict[str, Any]]] = []

    async def send(self, topic: str, value: dict[str, Any], *, key: str | None = None) -> None:
        self.sent.append((topic, key, value))


class _StaticPredictionClient:
    def __init__(self, price: int | None, *, configured: bool = True) -> None:
        self.price = price
        self.configured = configured
        self.calls: list[tuple[str, int]] = []

    async def optimal_price(self, sku: str, base_price: int, context: PricingContext) -> int | None:
        self.calls.append((sku, base_price))
        return self.price


@asynccontextmanager
async def _pricing_service(tmp_path, **kwargs: Any) -> AsyncIterator[PricingService]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'pricing-service.db'}"
    await create_schema(database_url, Base.metadata)
    session_factory = get_session_factory(database_url)
    try:
        async with session_factory() as session:
            yield PricingService(PricingRepository(session), **kwargs)
    finally:
        await dispose_engines()


async def _rule(service: PricingService, **overrides: Any) -> PricingRule:
    values: dict[str, Any] = {
        "sku": "SKU-1",
        "name": "Clearance",
        "description": None,
        "rule_type": "inventory_based",
        "status": "active",
        "priority": "medium",
        "min_price_cents": None,
        "max_price_cents": None,
        "start_at": None,
        "end_at": None,
        "config": {},
        "conditions": [],
    }
    values.update(overrides)
    return await service.repository.create_rule(**values)


@pytest.mark.asyncio
async def test_apply_rule_records_change_and_publishes_event(tmp_path) -> None:
    producer = _RecordingProducer()
    async with _pricing_service(tmp_path, event_publisher=PricingEventPublisher(producer)) as service:  # type: ignore[arg-type]
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(service)
        applied = _MetricTracker("pricing_rule_evaluations_total", {"rule_type": "inventory_based", "outcome": "changed"})
        recorded = _MetricTracker("pricing_price_changes_total", {"change_type": "rule", "direction": "decrease"})

        change = await service.apply_rule(rule, PricingContext(now=_NOW, stock_level=5))

        assert change is not None
        assert (change.old_price_cents, change.new_price_cents) == (1000, 650)
        assert change.change_type == "rule"
        assert change.rule_id == rule.id
        assert change.reason == "Applied rule: Clearance"
        assert change.metadata_json is not None
        assert change.metadata_json["ruleType"] == "inventory_based"
        assert change.metadata_json["context"]["stockLevel"] == 5
        assert (await service.get_product_price("SKU-1")).price_cents == 650
        assert applied.delta() == 1
        assert recorded.delta() == 1

    assert len(producer.sent) == 1
    topic, key, message = producer.sent[0]
    assert topic == PRICE_CHANGED_TOPIC
    assert key == "SKU-1"
    assert message["eventType"] == PRICE_CHANGED_TOPIC
    assert message["change"]["oldPrice"] == "10.00"
    assert message["change"]["newPrice"] == "6.50"
    assert message["change"]["changePercentage"] == "-35.00"
    assert message["change"]["currency"] == "USD"


@pytest.mark.asyncio
async def test_unchanged_price_records_nothing(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(service)

        change = await service.apply_rule(rule, PricingContext(now=_NOW, stock_level=50))

        assert change is None
        changes, total = await service.list_changes("SKU-1", limit=10, offset=0)
        assert total == 0
        assert changes == []


@pytest.mark.asyncio
async def test_apply_rejects_inactive_or_unmet_rules(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        draft = await _rule(service, status="draft")
        expired_window = await _rule(service, end_at=_NOW - timedelta(days=1))
        unmet = await _rule(
            service,
            conditions=[{"condition_type": "stock_level", "operator": "less_than", "value": "3"}],
        )
        rejected = _MetricTracker("pricing_rules_not_applicable_total", {"rule_type": "inventory_based"})

        for rule in (draft, expired_window, unmet):
            with pytest.raises(RuleNotApplicable):
                await service.apply_rule(rule, PricingContext(now=_NOW, stock_level=5))

        assert rejected.delta() == 3
        assert (await service.get_product_price("SKU-1")).price_cents == 1000


@pytest.mark.asyncio
async def test_apply_without_price_raises_not_found(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        rule = await _rule(service)

        with pytest.raises(ProductPriceNotFound):
            await service.apply_rule(rule, PricingContext(now=_NOW, stock_level=5))


@pytest.mark.asyncio
async def test_malformed_stored_config_keeps_price_and_counts_error(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(service, config={"clearance_discount": "most"})
        errors = _MetricTracker("pricing_rule_config_errors_total", {"rule_type": "inventory_based"})

        change = await service.apply_rule(rule, PricingContext(now=_NOW, stock_level=5))

        assert change is None
        assert errors.delta() == 1


@pytest.mark.asyncio
async def test_apply_best_rule_uses_highest_priority(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        await _rule(service, name="Demand", rule_type="demand_based", priority="low")
        bundle = await _rule(service, name="Bundle", rule_type="bundle", priority="high")
        await _rule(service, name="Paused", rule_type="seasonal", priority="critical", status="paused")

        outcome = await service.apply_best_rule("SKU-1", PricingContext(now=_NOW, quantity=5))

        assert outcome is not None
        assert outcome.rule.id == bundle.id
        assert outcome.change is not None
        assert outcome.change.new_price_cents == 900


@pytest.mark.asyncio
async def test_apply_best_rule_without_rules_returns_none(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)

        assert await service.apply_best_rule("SKU-1", PricingContext(now=_NOW)) is None
        with pytest.raises(ProductPriceNotFound):
            await service.apply_best_rule("SKU-404", PricingContext(now=_NOW))


@pytest.mark.asyncio
async def test_ai_rule_fetches_prediction(tmp_path) -> None:
    predictor = _StaticPredictionClient(1180)
    async with _pricing_service(tmp_path, prediction_client=predictor) as service:  # type: ignore[arg-type]
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(service, rule_type="dynamic_ai", max_price_cents=1150)

        change = await service.apply_rule(rule, PricingContext(now=_NOW))

        assert predictor.calls == [("SKU-1", 1000)]
        assert change is not None
        assert change.new_price_cents == 1150
        assert change.metadata_json is not None
        assert change.metadata_json["context"]["predictedPrice"] == 1180


@pytest.mark.asyncio
async def test_preview_reports_outcome_without_writing(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(
            service,
            min_price_cents=700,
            conditions=[{"condition_type": "time_of_day", "operator": "between", "value": "9,17"}],
        )

        preview = await service.preview_rule(rule, PricingContext(now=_NOW, stock_level=1))

        assert preview.applicable is True
        assert preview.would_apply is True
        assert preview.current_price == 1000
        assert preview.formula_price == 570
        assert preview.new_price == 700
        assert preview.difference == -300
        assert preview.change_percentage == Decimal("-30.00")
        assert [outcome.met for outcome in preview.conditions] == [True]
        assert (await service.get_product_price("SKU-1")).price_cents == 1000


@pytest.mark.asyncio
async def test_batch_apply_reports_failures_without_aborting(tmp_path) -> None:
    async with _pricing_service(tmp_path, max_batch_size=3) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(
            service,
            rule_type="volume",
            conditions=[{"condition_type": "time_of_day", "operator": "between", "value": "9,17"}],
        )
        contexts = [
            PricingContext(now=_NOW, quantity=10),
            PricingContext(now=_NOW.replace(hour=22), quantity=60),
            PricingContext(now=_NOW, quantity=2),
        ]

        results = await service.batch_apply(rule, contexts)

        assert [result.success for result in results] == [True, False, True]
        assert results[0].change is not None
        assert results[0].change.new_price_cents == 950
        assert results[1].error is not None
        assert results[2].change is None

        with pytest.raises(BatchTooLarge):
            await service.batch_apply(rule, contexts * 2)


@pytest.mark.asyncio
async def test_rollback_restores_previous_price_once(tmp_path) -> None:
    producer = _RecordingProducer()
    async with _pricing_service(tmp_path, event_publisher=PricingEventPublisher(producer)) as service:  # type: ignore[arg-type]
        await service.set_manual_price("SKU-1", price_cents=1000)
        rule = await _rule(service)

        with pytest.raises(NothingToRollback):
            await service.rollback_rule(rule)

        applied = await service.apply_rule(rule, PricingContext(now=_NOW, stock_level=5))
        assert applied is not None
        rollback = await service.rollback_rule(rule, "pricing error")

        assert rollback.change_type == "rollback"
        assert (rollback.old_price_cents, rollback.new_price_cents) == (650, 1000)
        assert rollback.reason == "Rollback: pricing error"
        assert rollback.metadata_json == {"rollback": True, "originalChangeId": applied.id}
        assert (await service.get_product_price("SKU-1")).price_cents == 1000

        with pytest.raises(NothingToRollback):
            await service.rollback_rule(rule)

    assert [message["change"]["changeType"] for _, _, message in producer.sent] == ["rule", "rollback"]


@pytest.mark.asyncio
async def test_validate_context_per_rule_type(tmp_path) -> None:
    async with _pricing_service(tmp_path, prediction_client=_StaticPredictionClient(None, configured=False)) as service:  # type: ignore[arg-type]
        bundle = await _rule(service, rule_type="bundle")
        inventory = await _rule(service, rule_type="inventory_based")
        competitor = await _rule(service, rule_type="competitor_based")
        ai = await _rule(service, rule_type="dynamic_ai")
        broken = await _rule(service, rule_type="time_based", config={"happy_hours": ["noon"]})
        bare = PricingContext(now=_NOW)

        missing_quantity = service.validate_context(bundle, bare)
        assert missing_quantity.valid is False
        assert "quantity" in missing_quantity.errors[0]
        assert service.validate_context(bundle, PricingContext(now=_NOW, quantity=2)).valid is True

        assert service.validate_context(inventory, bare).valid is False
        assert service.validate_context(inventory, PricingContext(now=_NOW, stock_level=0)).valid is True

        competitor_result = service.validate_context(competitor, bare)
        assert competitor_result.valid is True
        assert competitor_result.warnings

        assert service.validate_context(ai, bare).valid is False
        assert service.validate_context(ai, PricingContext(now=_NOW, predicted_price=900)).valid is True

        assert service.validate_context(broken, bare).valid is False


@pytest.mark.asyncio
async def test_ai_context_depends_on_a_configured_prediction_service(tmp_path) -> None:
    async with _pricing_service(tmp_path, prediction_client=_StaticPredictionClient(1200)) as service:  # type: ignore[arg-type]
        ai = await _rule(service, rule_type="dynamic_ai")
        assert service.validate_context(ai, PricingContext(now=_NOW)).valid is True

    async with _pricing_service(tmp_path) as service:
        ai = await _rule(service, rule_type="dynamic_ai")
        assert service.validate_context(ai, PricingContext(now=_NOW)).valid is False


@pytest.mark.asyncio
async def test_change_history_since_accepts_any_offset(tmp_path) -> None:
    plus_five = timezone(timedelta(hours=5))
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        await service.set_manual_price("SKU-1", price_cents=1200)
        now = datetime.now(timezone.utc)
        an_hour_ago = (now - timedelta(hours=1)).astimezone(plus_five)
        in_an_hour = (now + timedelta(hours=1)).astimezone(plus_five)

        recent, total = await service.list_changes("SKU-1", limit=10, offset=0, since=an_hour_ago)
        assert total == 1
        assert len(recent) == 1
        _, none_yet = await service.list_changes("SKU-1", limit=10, offset=0, since=in_an_hour)
        assert none_yet == 0
        assert (await service.summarize_changes("SKU-1", since=an_hour_ago)).total == 1
        assert (await service.summarize_changes("SKU-1", since=in_an_hour)).total == 0


@pytest.mark.asyncio
async def test_manual_price_creates_then_records_changes(tmp_path) -> None:
    async with _pricing_service(tmp_path, default_currency="EUR") as service:
        created, first_change = await service.set_manual_price("SKU-9", price_cents=2000)
        assert first_change is None
        assert created.currency == "EUR"

        updated, change = await service.set_manual_price("SKU-9", price_cents=2500, reason="supplier increase")
        assert change is not None
        assert change.change_type == "manual"
        assert change.reason == "supplier increase"
        assert updated.price_cents == 2500

        _, unchanged = await service.set_manual_price("SKU-9", price_cents=2500)
        assert unchanged is None


@pytest.mark.asyncio
async def test_summarize_changes(tmp_path) -> None:
    async with _pricing_service(tmp_path) as service:
        await service.set_manual_price("SKU-1", price_cents=1000)
        empty = await service.summarize_changes("SKU-1")
        assert empty.total == 0
        assert empty.volatility == Decimal("0.00")

        await service.set_manual_price("SKU-1", price_cents=1100)
        rule = await _rule(service, rule_type="bundle")
        await service.apply_rule(rule, PricingContext(now=_NOW, quantity=10))
        await service.rollback_rule(rule)

        summary = await service.summarize_changes("SKU-1")

    # +10.00%, 1100 -> 935 is -15.00%, 935 -> 1100 is +17.65%
    assert summary.total == 3
    assert summary.manual == 1
    assert summary.rule_driven == 1
    assert summary.rollbacks == 1
    assert summary.increases == 2
    assert summary.decreases == 1
    assert summary.average_change_percentage == Decimal("4.22")
    assert summary.volatility == Decimal("13.94")


@pytest.mark.asyncio
async def test_price_changed_events_reach_consumers_keyed_by_sku() -> None:
    received: list[tuple[str, str | None, dict[str, Any]]] = []

    async def handler(topic: str, key: str | None, message: dict[str, Any]) -> None:
        received.append((topic, key, message))

    consumer = KafkaConsumerStub([PRICE_CHANGED_TOPIC], handler)
    producer = KafkaProducerStub()
    await consumer.start()
    await producer.connect()
    try:
        publisher = PricingEventPublisher(producer)
        await publisher.price_changed(
            PriceChange(
                id=1,
                sku="SKU-7",
                rule_id=None,
                change_type="manual",
                old_price_cents=0,
                new_price_cents=500,
                reason="launch",
                created_at=_NOW,
            ),
            currency="USD",
        )
    finally:
        await producer.close()
        await consumer.stop()

    assert len(received) == 1
    topic, key, message = received[0]
    assert topic == PRICE_CHANGED_TOPIC
    assert key == "SKU-7"
    assert message["change"]["changePercentage"] == "0.00"
    assert message["change"]["createdAt"] == _NOW.isoformat()
