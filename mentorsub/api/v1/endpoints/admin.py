"""
Admin endpoints - cycle lifecycle actions, overrides and pricing preview.
"""
from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mentorsub.api.v1.errors import http_error
from mentorsub.core.database import get_db
from mentorsub.core.dependencies import get_provisioner, get_stripe_gateway, require_admin
from mentorsub.core.security import Principal
from mentorsub.schemas.admin import (
    CancelCycleRequest,
    ChangePlanRequest,
    OverrideResponse,
    OverrideSaveRequest,
    PricingPreviewResponse,
)
from mentorsub.schemas.billing import CycleResponse
from mentorsub.services.errors import BillingError
from mentorsub.services.ledger_service import Ledger
from mentorsub.services.override_service import OverrideService
from mentorsub.services.pricing_service import PricingResolver

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/cycles/{cycle_id}/cancel", response_model=CycleResponse)
def cancel_cycle(
    cycle_id: UUID,
    body: CancelCycleRequest,
    admin: Principal = Depends(require_admin),
    gateway: Any = Depends(get_stripe_gateway),
    provisioner: Any = Depends(get_provisioner),
    db: Session = Depends(get_db),
) -> CycleResponse:
    """Cancel now (seats torn down) or at period end."""
    ledger = Ledger(db, provisioner=provisioner, gateway=gateway)
    try:
        cycle = ledger.request_cancellation(cycle_id, immediate=body.immediate)
    except BillingError as exc:
        raise http_error(exc) from exc
    db.commit()
    logger.info("admin_cancel: admin=%s cycle=%s immediate=%s", admin.user_id, cycle_id, body.immediate)
    return CycleResponse.model_validate(cycle)


@router.post("/cycles/{cycle_id}/pause", response_model=CycleResponse)
def pause_cycle(
    cycle_id: UUID,
    admin: Principal = Depends(require_admin),
    gateway: Any = Depends(get_stripe_gateway),
    db: Session = Depends(get_db),
) -> CycleResponse:
    ledger = Ledger(db, gateway=gateway)
    try:
        cycle = ledger.pause(cycle_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    db.commit()
    logger.info("admin_pause: admin=%s cycle=%s", admin.user_id, cycle_id)
    return CycleResponse.model_validate(cycle)


@router.post("/cycles/{cycle_id}/resume", response_model=CycleResponse)
def resume_cycle(
    cycle_id: UUID,
    admin: Principal = Depends(require_admin),
    gateway: Any = Depends(get_stripe_gateway),
    db: Session = Depends(get_db),
) -> CycleResponse:
    ledger = Ledger(db, gateway=gateway)
    try:
        cycle = ledger.resume(cycle_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    db.commit()
    logger.info("admin_resume: admin=%s cycle=%s", admin.user_id, cycle_id)
    return CycleResponse.model_validate(cycle)


@router.post("/cycles/{cycle_id}/change-plan", response_model=CycleResponse)
def change_plan(
    cycle_id: UUID,
    body: ChangePlanRequest,
    admin: Principal = Depends(require_admin),
    gateway: Any = Depends(get_stripe_gateway),
    db: Session = Depends(get_db),
) -> CycleResponse:
    """Switch the live cycle to another plan; Stripe prorates."""
    ledger = Ledger(db, gateway=gateway)
    try:
        cycle = ledger.change_plan(cycle_id, body.plan_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    db.commit()
    logger.info("admin_change_plan: admin=%s cycle=%s plan=%s", admin.user_id, cycle_id, body.plan_id)
    return CycleResponse.model_validate(cycle)


@router.put("/overrides", response_model=OverrideResponse)
def save_override(
    body: OverrideSaveRequest,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OverrideResponse:
    """Create or update the buyer's open override for a plan."""
    try:
        override = OverrideService(db).save_override(**body.model_dump())
    except BillingError as exc:
        raise http_error(exc) from exc
    db.commit()
    logger.info("admin_override_saved: admin=%s override=%s", admin.user_id, override.id)
    return OverrideResponse.model_validate(override)


@router.get("/buyers/{buyer_id}/pricing/{plan_id}", response_model=PricingPreviewResponse)
def preview_pricing(
    buyer_id: int,
    plan_id: UUID,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> PricingPreviewResponse:
    """Effective terms the buyer would get on ``plan_id`` right now."""
    try:
        pricing = PricingResolver(db).resolve(buyer_id, plan_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return PricingPreviewResponse(
        plan_id=pricing.plan_id,
        price_cents=pricing.price_cents,
        seat_limit=pricing.seat_limit,
        stripe_price_id=pricing.stripe_price_id,
        billing_cycle=pricing.billing_cycle,
        override_id=pricing.override_id,
    )
