"""
Pricing resolution - plan defaults with per-buyer, time-windowed overrides.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from mentorsub.models.plan import Plan
from mentorsub.models.plan_override import PlanOverride
from mentorsub.services.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPricing:
    """Effective terms for one (buyer, plan) pair at one instant."""

    plan_id: UUID
    price_cents: int
    seat_limit: int
    stripe_price_id: Optional[str]
    billing_cycle: str
    override_id: Optional[UUID] = None


class PricingResolver:
    """
    Resolves price, seat limit and Stripe price id for a buyer.

    Read-only: must be called again at every renewal, since the effective
    override can change between cycles of the same plan.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def resolve(
        self,
        buyer_id: int,
        plan_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> ResolvedPricing:
        """
        Resolve effective pricing for ``buyer_id`` on ``plan_id``.

        Raises:
            NotFoundError: If the plan does not exist.
        """
        as_of = as_of or datetime.utcnow()
        plan = self._db.get(Plan, plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found.", code="plan_not_found")

        price_cents = plan.price_cents
        seat_limit = plan.default_seat_limit
        stripe_price_id = plan.stripe_price_id
        override_id = None

        override = self.effective_override(buyer_id, plan_id, as_of)
        if override is not None:
            override_id = override.id
            # NULL inherits the plan default
            if override.price_override_cents is not None:
                price_cents = override.price_override_cents
            if override.seat_limit_override is not None:
                seat_limit = override.seat_limit_override
            if override.stripe_price_id_override:
                stripe_price_id = override.stripe_price_id_override

        return ResolvedPricing(
            plan_id=plan.id,
            price_cents=price_cents,
            seat_limit=seat_limit,
            stripe_price_id=stripe_price_id,
            billing_cycle=plan.billing_cycle,
            override_id=override_id,
        )

    def effective_override(
        self,
        buyer_id: int,
        plan_id: UUID,
        as_of: datetime,
    ) -> Optional[PlanOverride]:
        """Override in effect at ``as_of``; the latest ``valid_from`` wins."""
        stmt = (
            select(PlanOverride)
            .where(
                PlanOverride.buyer_id == buyer_id,
                PlanOverride.plan_id == plan_id,
                PlanOverride.valid_from <= as_of,
                or_(
                    PlanOverride.valid_until.is_(None),
                    PlanOverride.valid_until >= as_of,
                ),
            )
            .order_by(PlanOverride.valid_from.desc(), PlanOverride.created_at.desc())
            .limit(1)
        )
        override = self._db.execute(stmt).scalar_one_or_none()
        if override is not None:
            logger.debug(
                "override_applied: buyer=%s plan=%s override=%s",
                buyer_id, plan_id, override.id,
            )
        return override
