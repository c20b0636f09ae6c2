"""
Pydantic schemas for billing administration.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CancelCycleRequest(BaseModel):
    immediate: bool = False


class ChangePlanRequest(BaseModel):
    plan_id: UUID


class OverrideSaveRequest(BaseModel):
    """Create or update the open override for a (buyer, plan) pair."""

    buyer_id: int = Field(..., gt=0)
    plan_id: UUID
    price_override_cents: Optional[int] = Field(None, ge=0)
    seat_limit_override: Optional[int] = Field(None, ge=0)
    stripe_price_id_override: Optional[str] = Field(None, max_length=255)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    admin_notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "OverrideSaveRequest":
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class OverrideResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: int
    plan_id: UUID
    price_override_cents: Optional[int] = None
    seat_limit_override: Optional[int] = None
    stripe_price_id_override: Optional[str] = None
    valid_from: datetime
    valid_until: Optional[datetime] = None
    admin_notes: Optional[str] = None


class PricingPreviewResponse(BaseModel):
    """What a buyer would be charged for a plan right now."""

    plan_id: UUID
    price_cents: int
    seat_limit: int
    stripe_price_id: Optional[str] = None
    billing_cycle: str
    override_id: Optional[UUID] = None
