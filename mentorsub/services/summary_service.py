"""
Buyer-facing subscription summary for the dashboard.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from mentorsub.services.ledger_service import Ledger
from mentorsub.services.seat_service import CapacityGuard


def build_subscription_summary(db: Session, buyer_id: int) -> dict[str, Any]:
    """Current cycle (any live state) plus seat usage."""
    cycle = Ledger(db).live_of(buyer_id)
    active_count = CapacityGuard(db, host=None).count_active(buyer_id)
    if cycle is None:
        return {
            "has_subscription": False,
            "active_count": active_count,
        }
    return {
        "has_subscription": True,
        "cycle_id": cycle.id,
        "plan_id": cycle.plan_id,
        "status": cycle.status,
        "billing_cycle": cycle.billing_cycle,
        "period_start": cycle.period_start,
        "period_end": cycle.period_end,
        "billed_price_cents": cycle.billed_price_cents,
        "seat_limit": cycle.billed_seat_limit,
        "active_count": active_count,
        "cancel_at_period_end": cycle.cancel_at_period_end,
    }
