"""
Seat endpoints - the buyer's mentees.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from mentorsub.api.v1.errors import http_error
from mentorsub.core.database import get_db
from mentorsub.core.dependencies import get_current_principal, get_host_client, get_provisioner
from mentorsub.core.security import Principal
from mentorsub.schemas.seat import (
    SeatCreateRequest,
    SeatListResponse,
    SeatResponse,
    SeatResultResponse,
    SeatStatusRequest,
)
from mentorsub.services.host_client import HostClientError
from mentorsub.services.ledger_service import Ledger
from mentorsub.services.seat_service import (
    DEPENDENT_NOT_FOUND,
    NOT_FOUND,
    CapacityGuard,
    SeatResult,
)

router = APIRouter()

_NOT_FOUND_REASONS = {NOT_FOUND, DEPENDENT_NOT_FOUND}


def _result_response(result: SeatResult) -> SeatResultResponse:
    """Success -> response body; refusal -> 404/409 with the reason code."""
    if not result.success:
        code = (
            status.HTTP_404_NOT_FOUND
            if result.reason in _NOT_FOUND_REASONS
            else status.HTTP_409_CONFLICT
        )
        raise HTTPException(
            status_code=code,
            detail={
                "reason": result.reason,
                "active_count": result.active_count,
                "seat_limit": result.seat_limit,
            },
        )
    return SeatResultResponse(
        success=True,
        active_count=result.active_count,
        seat_limit=result.seat_limit,
        seat=SeatResponse.model_validate(result.seat) if result.seat else None,
    )


@router.get("", response_model=SeatListResponse)
def list_seats(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> SeatListResponse:
    """List the buyer's seats, active first."""
    guard = CapacityGuard(db, host=None)
    cycle = Ledger(db).live_of(principal.user_id)
    return SeatListResponse(
        seats=[SeatResponse.model_validate(seat) for seat in guard.list_seats(principal.user_id)],
        active_count=guard.count_active(principal.user_id),
        seat_limit=cycle.billed_seat_limit if cycle else None,
    )


@router.post("", response_model=SeatResultResponse, status_code=status.HTTP_201_CREATED)
def add_seat(
    body: SeatCreateRequest,
    principal: Principal = Depends(get_current_principal),
    host: Any = Depends(get_host_client),
    provisioner: Any = Depends(get_provisioner),
    db: Session = Depends(get_db),
) -> SeatResultResponse:
    """Sponsor a new mentee on the buyer's active subscription."""
    guard = CapacityGuard(db, host=host, provisioner=provisioner)
    try:
        result = guard.add_seat(principal.user_id, body.dependent_id)
    except HostClientError as exc:
        raise http_error(exc) from exc
    response = _result_response(result)
    db.commit()
    return response


@router.post("/{dependent_id}/status", response_model=SeatResultResponse)
def set_seat_status(
    dependent_id: int,
    body: SeatStatusRequest,
    principal: Principal = Depends(get_current_principal),
    provisioner: Any = Depends(get_provisioner),
    db: Session = Depends(get_db),
) -> SeatResultResponse:
    """Activate (capacity permitting) or deactivate one of the buyer's seats."""
    guard = CapacityGuard(db, host=None, provisioner=provisioner)
    result = guard.set_seat_active(principal.user_id, dependent_id, body.active)
    response = _result_response(result)
    db.commit()
    return response
