"""
Billing endpoints - Stripe checkout, webhook, subscription summary and history.
"""
from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from mentorsub.api.v1.errors import http_error
from mentorsub.core.config import settings
from mentorsub.core.database import get_db
from mentorsub.core.dependencies import (
    get_current_principal,
    get_provisioner,
    get_stripe_gateway,
    get_webhook_gateway,
)
from mentorsub.core.security import Principal
from mentorsub.schemas.billing import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CycleResponse,
    SubscriptionSummaryResponse,
    WebhookAckResponse,
)
from mentorsub.services.errors import BillingError, WebhookAuthenticationError
from mentorsub.services.ledger_service import Ledger
from mentorsub.services.subscription_service import EventProcessor
from mentorsub.services.summary_service import build_subscription_summary

logger = logging.getLogger(__name__)

router = APIRouter()


def _validate_return_url(url: str) -> None:
    """
    Validate that a return URL belongs to an allowed origin.

    Uses CORS_ORIGINS as the allowlist. Rejects URLs pointing to
    external hosts to prevent open-redirect after Stripe flows.

    Raises:
        HTTPException 400 if the URL host is not in the allowlist.
    """
    allowed_origins = settings.cors_origins_list
    # Wildcard CORS = skip validation (dev only)
    if "*" in allowed_origins:
        return

    parsed = urlparse(url)
    url_origin = f"{parsed.scheme}://{parsed.netloc}"
    for origin in allowed_origins:
        origin = origin.strip().rstrip("/")
        if url_origin == origin:
            return

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Return URL not allowed: host '{parsed.netloc}' is not in the allowlist.",
    )


@router.post("/checkout", response_model=CheckoutSessionResponse)
def create_checkout(
    body: CheckoutSessionRequest,
    principal: Principal = Depends(get_current_principal),
    gateway: Any = Depends(get_stripe_gateway),
    db: Session = Depends(get_db),
) -> CheckoutSessionResponse:
    """Create a Stripe Checkout session for the buyer's chosen plan."""
    _validate_return_url(body.success_url)
    _validate_return_url(body.cancel_url)

    svc = EventProcessor(db, gateway, webhook_secret=getattr(gateway, "webhook_secret", ""))
    try:
        result = svc.create_checkout_session(
            buyer_id=principal.user_id,
            plan_id=body.plan_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return CheckoutSessionResponse(**result)


@router.get("/subscription", response_model=SubscriptionSummaryResponse)
def get_my_subscription(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> SubscriptionSummaryResponse:
    """Return the buyer's live cycle and seat usage."""
    return SubscriptionSummaryResponse(**build_subscription_summary(db, principal.user_id))


@router.get("/history", response_model=list[CycleResponse])
def get_my_history(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> list[CycleResponse]:
    """All billing cycles of the buyer, newest first."""
    cycles = Ledger(db).history_of(principal.user_id)
    return [CycleResponse.model_validate(cycle) for cycle in cycles]


def _process_webhook(
    db: Session,
    gateway: Any,
    provisioner: Any,
    payload: bytes,
    sig_header: str,
) -> dict[str, str]:
    svc = EventProcessor(
        db,
        gateway,
        webhook_secret=getattr(gateway, "webhook_secret", ""),
        provisioner=provisioner,
    )
    try:
        event_type = svc.handle_webhook_event(payload, sig_header)
        db.commit()
        return {"status": "ok", "event": event_type}
    except WebhookAuthenticationError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.detail,
        ) from exc
    except BillingError as exc:
        if exc.code == "stripe_not_configured":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=exc.detail,
            ) from exc
        logger.exception("webhook_failed: code=%s", exc.code)
    except Exception:
        logger.exception("webhook_failed")

    # Acknowledge anyway so Stripe does not redeliver a permanently failing
    # payload; the failed StripeEvent row is kept when it can be.
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("webhook_failure_log_not_saved")
    return {"status": "error_logged"}


@router.post("/webhook", response_model=WebhookAckResponse, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    gateway: Any = Depends(get_webhook_gateway),
    provisioner: Any = Depends(get_provisioner),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    """
    Stripe webhook endpoint - no JWT auth, uses Stripe signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    return await run_in_threadpool(_process_webhook, db, gateway, provisioner, payload, sig_header)
