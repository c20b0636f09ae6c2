"""
Plan overrides - admin maintenance of per-buyer exceptions.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from mentorsub.models.plan import Plan
from mentorsub.models.plan_override import PlanOverride
from mentorsub.services.errors import BillingError, NotFoundError

logger = logging.getLogger(__name__)


class OverrideService:
    """Upserts the open override for a (buyer, plan) pair."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def save_override(
        self,
        *,
        buyer_id: int,
        plan_id: UUID,
        price_override_cents: Optional[int] = None,
        seat_limit_override: Optional[int] = None,
        stripe_price_id_override: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        admin_notes: Optional[str] = None,
    ) -> PlanOverride:
        """
        Update the currently open override in place, or create a new one.

        "Open" means no end date or an end date in the future. Existing
        cycles keep their snapshots; the change applies from the next
        checkout or renewal.
        """
        if self._db.get(Plan, plan_id) is None:
            raise NotFoundError(f"Plan {plan_id} not found.", code="plan_not_found")

        now = datetime.utcnow()
        valid_from = valid_from or now
        if valid_until is not None and valid_until <= valid_from:
            raise BillingError(
                "valid_until must be after valid_from.",
                code="invalid_override_window",
            )

        with self._db.begin_nested():
            override = self.open_override(buyer_id, plan_id, now)
            created = override is None
            if created:
                override = PlanOverride(buyer_id=buyer_id, plan_id=plan_id)
                self._db.add(override)

            override.price_override_cents = price_override_cents
            override.seat_limit_override = seat_limit_override
            override.stripe_price_id_override = stripe_price_id_override or None
            override.valid_from = valid_from
            override.valid_until = valid_until
            override.admin_notes = admin_notes
            self._db.flush()

        logger.info(
            "override_saved: buyer=%s plan=%s override=%s created=%s",
            buyer_id, plan_id, override.id, created,
        )
        return override

    def open_override(self, buyer_id: int, plan_id: UUID, now: datetime) -> Optional[PlanOverride]:
        stmt = (
            select(PlanOverride)
            .where(
                PlanOverride.buyer_id == buyer_id,
                PlanOverride.plan_id == plan_id,
                or_(PlanOverride.valid_until.is_(None), PlanOverride.valid_until > now),
            )
            .order_by(PlanOverride.valid_from.desc())
            .limit(1)
        )
        return self._db.execute(stmt).scalar_one_or_none()
