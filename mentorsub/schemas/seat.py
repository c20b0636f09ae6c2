"""
Pydantic schemas for seat (mentee) management.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SeatCreateRequest(BaseModel):
    dependent_id: int = Field(..., gt=0, description="Host user id of the mentee")


class SeatStatusRequest(BaseModel):
    active: bool


class SeatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: int
    dependent_id: int
    cycle_id: UUID
    is_active: bool
    created_at: datetime
    updated_at: datetime


class SeatResultResponse(BaseModel):
    """Successful seat operation with the resulting usage."""

    success: bool
    reason: Optional[str] = None
    active_count: int
    seat_limit: Optional[int] = None
    seat: Optional[SeatResponse] = None


class SeatListResponse(BaseModel):
    seats: list[SeatResponse]
    active_count: int
    seat_limit: Optional[int] = None
