"""API routes for managing and applying pricing rules."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ..dependencies import get_pricing_service
from ..domain import RuleStatus, RuleType
from ..errors import (
    BatchTooLarge,
    InvalidRuleDefinition,
    NothingToRollback,
    ProductPriceNotFound,
    RuleNotApplicable,
)
from ..models import PricingRule
from ..rule_configs import validate_rule_definition
from ..schemas import (
    BatchApplyRequest,
    BatchApplyResponse,
    BatchItemResponse,
    ContextValidationResponse,
    PriceChangeResponse,
    PricePreviewResponse,
    PricingContextPayload,
    PricingRuleCreate,
    PricingRuleListResponse,
    PricingRuleResponse,
    PricingRuleUpdate,
    RollbackRequest,
    RuleApplicationResponse,
    from_cents,
    to_cents,
)
from ..services import PricingService
from .serializers import serialize_change, serialize_rule

router = APIRouter(prefix="/pricing-rules", tags=["pricing-rules"])


async def _load_rule(rule_id: int, service: PricingService) -> PricingRule:
    rule = await service.repository.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pricing rule not found")
    return rule


def _unprocessable(exc: InvalidRuleDefinition) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


def _price_not_found(exc: ProductPriceNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No price recorded for {exc.sku}")


@router.post("", response_model=PricingRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_pricing_rule(
    payload: PricingRuleCreate,
    service: PricingService = Depends(get_pricing_service),
) -> PricingRuleResponse:
    min_price_cents = to_cents(payload.min_price) if payload.min_price is not None else None
    max_price_cents = to_cents(payload.max_price) if payload.max_price is not None else None
    try:
        validate_rule_definition(
            payload.rule_type,
            min_price_cents=min_price_cents,
            max_price_cents=max_price_cents,
            start_at=payload.start_at,
            end_at=payload.end_at,
            config=payload.config,
        )
    except InvalidRuleDefinition as exc:
        raise _unprocessable(exc) from exc

    rule = await service.repository.create_rule(
        sku=payload.sku,
        name=payload.name,
        description=payload.description,
        rule_type=payload.rule_type.value,
        status=payload.status.value,
        priority=payload.priority.value,
        min_price_cents=min_price_cents,
        max_price_cents=max_price_cents,
        start_at=payload.start_at,
        end_at=payload.end_at,
        config=payload.config,
        conditions=[
            {
                "condition_type": condition.condition_type.value,
                "operator": condition.operator.value,
                "value": condition.value,
            }
            for condition in payload.conditions
        ],
    )
    return serialize_rule(rule)


@router.get("", response_model=PricingRuleListResponse)
async def list_pricing_rules(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sku: str | None = Query(default=None),
    status_filter: RuleStatus | None = Query(default=None, alias="status"),
    rule_type: RuleType | None = Query(default=None, alias="ruleType"),
    service: PricingService = Depends(get_pricing_service),
) -> PricingRuleListResponse:
    rules, total = await service.repository.list_rules(
        limit=limit,
        offset=offset,
        sku=sku.strip() if sku else None,
        status=status_filter.value if status_filter else None,
        rule_type=rule_type.value if rule_type else None,
    )
    return PricingRuleListResponse(items=[serialize_rule(rule) for rule in rules], total=total)


@router.get("/{rule_id}", response_model=PricingRuleResponse)
async def get_pricing_rule(
    rule_id: int,
    service: PricingService = Depends(get_pricing_service),
) -> PricingRuleResponse:
    return serialize_rule(await _load_rule(rule_id, service))


@router.patch("/{rule_id}", response_model=PricingRuleResponse)
async def update_pricing_rule(
    rule_id: int,
    payload: PricingRuleUpdate,
    service: PricingService = Depends(get_pricing_service),
) -> PricingRuleResponse:
    rule = await _load_rule(rule_id, service)
    fields = payload.model_dump(exclude_unset=True)

    changes: dict[str, object] = {}
    for name in ("name", "description", "start_at", "end_at", "config"):
        if name in fields:
            changes[name] = fields[name]
    if fields.get("status") is not None:
        changes["status"] = payload.status.value  # type: ignore[union-attr]
    if fields.get("priority") is not None:
        changes["priority"] = payload.priority.value  # type: ignore[union-attr]
    if "min_price" in fields:
        changes["min_price_cents"] = to_cents(payload.min_price) if payload.min_price is not None else None
    if "max_price" in fields:
        changes["max_price_cents"] = to_cents(payload.max_price) if payload.max_price is not None else None
    if changes.get("config", rule.config) is None:
        changes["config"] = {}
    if payload.conditions is not None:
        changes["conditions"] = [
            {
                "condition_type": condition.condition_type.value,
                "operator": condition.operator.value,
                "value": condition.value,
            }
            for condition in payload.conditions
        ]

    try:
        validate_rule_definition(
            RuleType(rule.rule_type),
            min_price_cents=changes.get("min_price_cents", rule.min_price_cents),  # type: ignore[arg-type]
            max_price_cents=changes.get("max_price_cents", rule.max_price_cents),  # type: ignore[arg-type]
            start_at=changes.get("start_at", rule.start_at),  # type: ignore[arg-type]
            end_at=changes.get("end_at", rule.end_at),  # type: ignore[arg-type]
            config=changes.get("config", rule.config),  # type: ignore[arg-type]
        )
    except InvalidRuleDefinition as exc:
        raise _unprocessable(exc) from exc

    updated = await service.repository.update_rule(rule, changes)
    return serialize_rule(updated)


@router.delete("/{rule_id}")
async def delete_pricing_rule(
    rule_id: int,
    service: PricingService = Depends(get_pricing_service),
) -> Response:
    rule = await _load_rule(rule_id, service)
    if await service.repository.rule_has_changes(rule.id):
        # The change log keeps pointing at the rule; retire it instead.
        await service.repository.update_rule(rule, {"status": RuleStatus.ARCHIVED.value})
    else:
        await service.repository.delete_rule(rule)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{rule_id}/preview", response_model=PricePreviewResponse)
async def preview_pricing_rule(
    rule_id: int,
    payload: PricingContextPayload,
    service: PricingService = Depends(get_pricing_service),
) -> PricePreviewResponse:
    rule = await _load_rule(rule_id, service)
    try:
        preview = await service.preview_rule(rule, payload.to_context())
    except ProductPriceNotFound as exc:
        raise _price_not_found(exc) from exc

    return PricePreviewResponse.model_validate(
        {
            "ruleId": preview.rule_id,
            "sku": preview.sku,
            "currency": preview.currency,
            "applicable": preview.applicable,
            "wouldApply": preview.would_apply,
            "currentPrice": from_cents(preview.current_price),
            "newPrice": from_cents(preview.new_price),
            "formulaPrice": from_cents(preview.formula_price),
            "difference": from_cents(preview.difference),
            "changePercentage": preview.change_percentage,
            "minPrice": from_cents(preview.min_price_cents),
            "maxPrice": from_cents(preview.max_price_cents),
            "conditions": [
                {
                    "conditionType": outcome.condition.condition_type,
                    "operator": outcome.condition.operator,
                    "value": outcome.condition.value,
                    "met": outcome.met,
                }
                for outcome in preview.conditions
            ],
            "configError": preview.config_error,
        }
    )


@router.post("/{rule_id}/apply", response_model=RuleApplicationResponse)
async def apply_pricing_rule(
    rule_id: int,
    payload: PricingContextPayload,
    service: PricingService = Depends(get_pricing_service),
) -> RuleApplicationResponse:
    rule = await _load_rule(rule_id, service)
    try:
        change = await service.apply_rule(rule, payload.to_context())
        product_price = await service.get_product_price(rule.sku)
    except RuleNotApplicable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Pricing rule is not applicable") from exc
    except ProductPriceNotFound as exc:
        raise _price_not_found(exc) from exc

    return RuleApplicationResponse(
        rule_id=rule.id,
        sku=rule.sku,
        applied=change is not None,
        price=from_cents(product_price.price_cents),
        change=serialize_change(change) if change is not None else None,
    )


@router.post("/{rule_id}/batch-apply", response_model=BatchApplyResponse)
async def batch_apply_pricing_rule(
    rule_id: int,
    payload: BatchApplyRequest,
    service: PricingService = Depends(get_pricing_service),
) -> BatchApplyResponse:
    rule = await _load_rule(rule_id, service)
    try:
        results = await service.batch_apply(rule, [item.to_context() for item in payload.contexts])
    except BatchTooLarge as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    items = [
        BatchItemResponse(
            index=result.index,
            success=result.success,
            change=serialize_change(result.change) if result.change is not None else None,
            error=result.error,
        )
        for result in results
    ]
    succeeded = sum(1 for item in items if item.success)
    return BatchApplyResponse(rule_id=rule.id, succeeded=succeeded, failed=len(items) - succeeded, results=items)


@router.post("/{rule_id}/rollback", response_model=PriceChangeResponse)
async def rollback_pricing_rule(
    rule_id: int,
    payload: RollbackRequest | None = None,
    service: PricingService = Depends(get_pricing_service),
) -> PriceChangeResponse:
    rule = await _load_rule(rule_id, service)
    try:
        change = await service.rollback_rule(rule, payload.reason if payload else None)
    except NothingToRollback as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Nothing to roll back") from exc
    except ProductPriceNotFound as exc:
        raise _price_not_found(exc) from exc
    return serialize_change(change)


@router.post("/{rule_id}/validate-context", response_model=ContextValidationResponse)
async def validate_pricing_context(
    rule_id: int,
    payload: PricingContextPayload,
    service: PricingService = Depends(get_pricing_service),
) -> ContextValidationResponse:
    rule = await _load_rule(rule_id, service)
    validation = service.validate_context(rule, payload.to_context())
    return ContextValidationResponse(valid=validation.valid, errors=validation.errors, warnings=validation.warnings)
