"""API routes for product prices and their change history."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import get_pricing_service
from ..errors import ProductPriceNotFound, RuleNotApplicable
from ..schemas import (
    ManualPriceResponse,
    PriceChangeListResponse,
    PriceChangeSummaryResponse,
    PriceEvaluationResponse,
    PricingContextPayload,
    ProductPriceResponse,
    ProductPriceUpdate,
    from_cents,
    to_cents,
)
from ..services import PricingService
from .serializers import product_price_payload, serialize_change, serialize_product_price

router = APIRouter(prefix="/prices", tags=["prices"])


def _clean_sku(sku: str) -> str:
    cleaned = sku.strip()
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="sku must be non-empty")
    return cleaned


@router.put("/{sku}", response_model=ManualPriceResponse)
async def set_product_price(
    sku: str,
    payload: ProductPriceUpdate,
    service: PricingService = Depends(get_pricing_service),
) -> ManualPriceResponse:
    product_price, change = await service.set_manual_price(
        _clean_sku(sku),
        price_cents=to_cents(payload.price),
        currency=payload.currency,
        reason=payload.reason,
    )
    return ManualPriceResponse.model_validate(
        {
            **product_price_payload(product_price),
            "change": serialize_change(change) if change is not None else None,
        }
    )


@router.get("/{sku}", response_model=ProductPriceResponse)
async def get_product_price(
    sku: str,
    service: PricingService = Depends(get_pricing_service),
) -> ProductPriceResponse:
    try:
        product_price = await service.get_product_price(_clean_sku(sku))
    except ProductPriceNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Price not found") from exc
    return serialize_product_price(product_price)


@router.post("/{sku}/evaluate", response_model=PriceEvaluationResponse)
async def evaluate_product_price(
    sku: str,
    payload: PricingContextPayload,
    service: PricingService = Depends(get_pricing_service),
) -> PriceEvaluationResponse:
    """Apply the highest-priority applicable rule for ``sku``, if any."""

    sku = _clean_sku(sku)
    try:
        outcome = await service.apply_best_rule(sku, payload.to_context())
        product_price = await service.get_product_price(sku)
    except ProductPriceNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Price not found") from exc
    except RuleNotApplicable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Pricing rule is not applicable") from exc

    change = outcome.change if outcome is not None else None
    return PriceEvaluationResponse(
        sku=sku,
        currency=product_price.currency,
        price=from_cents(product_price.price_cents),
        rule_id=outcome.rule.id if outcome is not None else None,
        applied=change is not None,
        change=serialize_change(change) if change is not None else None,
    )


@router.get("/{sku}/changes", response_model=PriceChangeListResponse)
async def list_price_changes(
    sku: str,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    since: datetime | None = Query(default=None),
    service: PricingService = Depends(get_pricing_service),
) -> PriceChangeListResponse:
    changes, total = await service.list_changes(_clean_sku(sku), limit=limit, offset=offset, since=since)
    return PriceChangeListResponse(items=[serialize_change(change) for change in changes], total=total)


@router.get("/{sku}/changes/summary", response_model=PriceChangeSummaryResponse)
async def summarize_price_changes(
    sku: str,
    since: datetime | None = Query(default=None),
    service: PricingService = Depends(get_pricing_service),
) -> PriceChangeSummaryResponse:
    summary = await service.summarize_changes(_clean_sku(sku), since=since)
    return PriceChangeSummaryResponse(
        sku=summary.sku,
        total=summary.total,
        rule_driven=summary.rule_driven,
        manual=summary.manual,
        rollbacks=summary.rollbacks,
        increases=summary.increases,
        decreases=summary.decreases,
        average_change_percentage=summary.average_change_percentage,
        volatility=summary.volatility,
    )
