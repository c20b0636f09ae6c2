"""
Pydantic schemas for Billing API - checkout, subscription summary, history.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CheckoutSessionRequest(BaseModel):
    """Start a Stripe Checkout for a plan."""

    plan_id: UUID
    success_url: str = Field(..., min_length=1, max_length=2048)
    cancel_url: str = Field(..., min_length=1, max_length=2048)


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_id: str


class CycleResponse(BaseModel):
    """One billing cycle as shown in the payment history."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_id: UUID
    status: str
    billing_cycle: str
    billed_price_cents: int
    billed_seat_limit: int
    period_start: datetime
    period_end: datetime
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    stripe_invoice_id: Optional[str] = None
    created_at: datetime


class SubscriptionSummaryResponse(BaseModel):
    """Dashboard view of the buyer's current subscription."""

    has_subscription: bool
    cycle_id: Optional[UUID] = None
    plan_id: Optional[UUID] = None
    status: Optional[str] = None
    billing_cycle: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    billed_price_cents: Optional[int] = None
    seat_limit: Optional[int] = None
    active_count: int = 0
    cancel_at_period_end: bool = False


class WebhookAckResponse(BaseModel):
    status: str
    event: Optional[str] = None
