"""Data access helpers for the pricing service."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PriceChange, PricingRule, PricingRuleCondition, ProductPrice


class PricingRepository:
    """Persistence helpers for rules, product prices and the price change log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Rules --------------------------------------------------------------------------------

    async def create_rule(
        self,
        *,
        sku: str,
        name: str,
        description: str | None,
        rule_type: str,
        status: str,
        priority: str,
        min_price_cents: int | None,
        max_price_cents: int | None,
        start_at: datetime | None,
        end_at: datetime | None,
        config: dict[str, Any],
        conditions: list[dict[str, str]],
    ) -> PricingRule:
        rule = PricingRule(
            sku=sku,
            name=name,
            description=description,
            rule_type=rule_type,
            status=status,
            priority=priority,
            min_price_cents=min_price_cents,
            max_price_cents=max_price_cents,
            start_at=start_at,
            end_at=end_at,
            config=config,
            conditions=[PricingRuleCondition(**condition) for condition in conditions],
        )
        self.session.add(rule)
        await self.session.flush()
        await self.session.refresh(rule, attribute_names=["created_at", "updated_at", "conditions"])
        return rule

    async def get_rule(self, rule_id: int) -> PricingRule | None:
        result = await self.session.execute(select(PricingRule).where(PricingRule.id == rule_id))
        return result.scalar_one_or_none()

    async def list_rules(
        self,
        *,
        limit: int,
        offset: int,
        sku: str | None,
        status: str | None,
        rule_type: str | None,
    ) -> tuple[list[PricingRule], int]:
        base: Select[tuple[PricingRule]] = select(PricingRule)
        count: Select[tuple[int]] = select(func.count(PricingRule.id))

        filters = []
        if sku:
            filters.append(PricingRule.sku == sku)
        if status:
            filters.append(PricingRule.status == status)
        if rule_type:
            filters.append(PricingRule.rule_type == rule_type)

        if filters:
            base = base.where(and_(*filters))
            count = count.where(and_(*filters))

        base = base.order_by(PricingRule.created_at.desc(), PricingRule.id.desc())

        total_result = await self.session.execute(count)
        total = total_result.scalar_one()

        rules_result = await self.session.execute(base.offset(offset).limit(limit))
        rules = list(rules_result.scalars().unique())
        return rules, total

    async def list_active_rules_for_sku(self, sku: str) -> list[PricingRule]:
        result = await self.session.execute(
            select(PricingRule).where(PricingRule.sku == sku, PricingRule.status == "active")
        )
        return list(result.scalars().unique())

    async def update_rule(self, rule: PricingRule, changes: dict[str, Any]) -> PricingRule:
        conditions = changes.pop("conditions", None)
        for attribute, value in changes.items():
            setattr(rule, attribute, value)
        if conditions is not None:
            rule.conditions = [PricingRuleCondition(**condition) for condition in conditions]

        await self.session.flush()
        await self.session.refresh(rule, attribute_names=["updated_at", "conditions"])
        return rule

    async def delete_rule(self, rule: PricingRule) -> None:
        await self.session.delete(rule)
        await self.session.flush()

    async def rule_has_changes(self, rule_id: int) -> bool:
        result = await self.session.execute(
            select(func.count(PriceChange.id)).where(PriceChange.rule_id == rule_id)
        )
        return result.scalar_one() > 0

    # Product prices -----------------------------------------------------------------------

    async def get_product_price(self, sku: str) -> ProductPrice | None:
        result = await self.session.execute(select(ProductPrice).where(ProductPrice.sku == sku))
        return result.scalar_one_or_none()

    async def create_product_price(self, *, sku: str, currency: str, price_cents: int) -> ProductPrice:
        product_price = ProductPrice(sku=sku, currency=currency, price_cents=price_cents)
        self.session.add(product_price)
        await self.session.flush()
        await self.session.refresh(product_price, attribute_names=["created_at", "updated_at"])
        return product_price

    async def set_product_price(
        self,
        product_price: ProductPrice,
        *,
        price_cents: int,
        currency: str | None = None,
    ) -> ProductPrice:
        product_price.price_cents = price_cents
        if currency is not None:
            product_price.currency = currency
        await self.session.flush()
        await self.session.refresh(product_price, attribute_names=["updated_at"])
        return product_price

    # Price change log ---------------------------------------------------------------------

    async def add_price_change(
        self,
        *,
        sku: str,
        rule_id: int | None,
        change_type: str,
        old_price_cents: int,
        new_price_cents: int,
        reason: str,
        metadata: dict[str, Any] | None,
    ) -> PriceChange:
        change = PriceChange(
            sku=sku,
            rule_id=rule_id,
            change_type=change_type,
            old_price_cents=old_price_cents,
            new_price_cents=new_price_cents,
            reason=reason,
            metadata_json=metadata,
        )
        self.session.add(change)
        await self.session.flush()
        await self.session.refresh(change, attribute_names=["created_at"])
        return change

    async def latest_rule_change(self, *, rule_id: int, sku: str) -> PriceChange | None:
        """Most recent rule-driven or rollback change the rule made to ``sku``."""

        result = await self.session.execute(
            select(PriceChange)
            .where(
                PriceChange.rule_id == rule_id,
                PriceChange.sku == sku,
                PriceChange.change_type.in_(("rule", "rollback")),
            )
            .order_by(PriceChange.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_price_changes(
        self,
        *,
        sku: str,
        limit: int,
        offset: int,
        since: datetime | None = None,
    ) -> tuple[list[PriceChange], int]:
        filters = [PriceChange.sku == sku]
        if since is not None:
            filters.append(PriceChange.created_at >= since)

        count = select(func.count(PriceChange.id)).where(*filters)
        total = (await self.session.execute(count)).scalar_one()

        query = (
            select(PriceChange)
            .where(*filters)
            .order_by(PriceChange.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars()), total

    async def all_price_changes(self, *, sku: str, since: datetime | None = None) -> list[PriceChange]:
        query = select(PriceChange).where(PriceChange.sku == sku)
        if since is not None:
            query = query.where(PriceChange.created_at >= since)
        result = await self.session.execute(query.order_by(PriceChange.id.asc()))
        return list(result.scalars())
