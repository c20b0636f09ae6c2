"""
Ledger - billing-cycle store and subscription state machine.

One row per billing period. Rows are never deleted and never change
except for status, cancel_at_period_end, cancelled_at and updated_at.
Multi-row transitions (renew, expire, immediate cancellation) run inside a
savepoint with the cycle row locked and a conditional UPDATE, so a webhook
redelivery racing a reconciliation pass applies at most once.

Host-side effects (course membership, roles) are registered with
``after_commit`` and run only when the caller's transaction commits.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentorsub.core.side_effects import after_commit
from mentorsub.models.billing_cycle import (
    ACTIVE,
    CANCELLED,
    EXPIRED,
    LIVE_STATUSES,
    PAST_DUE,
    PAUSED,
    SUPERSEDED,
    BillingCycle,
)
from mentorsub.models.seat import Seat
from mentorsub.services.errors import ConsistencyError, NotFoundError
from mentorsub.services.pricing_service import PricingResolver, ResolvedPricing
from mentorsub.services.provisioning_service import TaskProvisioner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewCycle:
    """Everything needed to insert a cycle row; validated on construction."""

    buyer_id: int
    plan_id: UUID
    price_cents: int
    seat_limit: int
    billing_cycle: str
    period_start: datetime
    period_end: datetime
    override_id: Optional[UUID] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_price_id_used: Optional[str] = None

    def __post_init__(self) -> None:
        if self.price_cents < 0:
            raise ValueError("price_cents must be >= 0")
        if self.seat_limit < 0:
            raise ValueError("seat_limit must be >= 0")
        if self.billing_cycle not in ("monthly", "annual"):
            raise ValueError(f"unknown billing_cycle: {self.billing_cycle!r}")
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")

    @classmethod
    def from_pricing(
        cls,
        buyer_id: int,
        pricing: ResolvedPricing,
        *,
        period_start: datetime,
        period_end: datetime,
        **stripe_ids: Optional[str],
    ) -> NewCycle:
        return cls(
            buyer_id=buyer_id,
            plan_id=pricing.plan_id,
            price_cents=pricing.price_cents,
            seat_limit=pricing.seat_limit,
            billing_cycle=pricing.billing_cycle,
            period_start=period_start,
            period_end=period_end,
            override_id=pricing.override_id,
            stripe_price_id_used=stripe_ids.pop("stripe_price_id_used", None)
            or pricing.stripe_price_id,
            **stripe_ids,
        )


class Ledger:
    """
    Cycle store and lifecycle transitions.

    ``gateway`` is only needed for the admin operations that call Stripe
    first (cancel, pause, resume, plan change).
    """

    def __init__(self, db: Session, provisioner: Any = None, gateway: Any = None) -> None:
        self._db = db
        self._provisioner = provisioner or TaskProvisioner()
        self._gateway = gateway

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, cycle_id: UUID) -> BillingCycle:
        cycle = self._db.get(BillingCycle, cycle_id)
        if cycle is None:
            raise NotFoundError(f"Billing cycle {cycle_id} not found.", code="cycle_not_found")
        return cycle

    def active_of(self, buyer_id: int) -> Optional[BillingCycle]:
        """Buyer's cycle with status strictly ``active``."""
        return self._newest(buyer_id, (ACTIVE,))

    def live_of(self, buyer_id: int) -> Optional[BillingCycle]:
        """
        Buyer's cycle in any live state, including ``past_due``.

        This is the cycle whose ``billed_seat_limit`` governs seat capacity.
        """
        return self._newest(buyer_id, LIVE_STATUSES)

    def latest_of(self, buyer_id: int) -> Optional[BillingCycle]:
        return self._newest(buyer_id, None)

    def history_of(self, buyer_id: int) -> list[BillingCycle]:
        """All cycles for the buyer, newest first."""
        stmt = (
            select(BillingCycle)
            .where(BillingCycle.buyer_id == buyer_id)
            .order_by(BillingCycle.created_at.desc(), BillingCycle.period_start.desc())
        )
        return list(self._db.execute(stmt).scalars().all())

    def find_by_invoice(self, invoice_id: str) -> Optional[BillingCycle]:
        stmt = select(BillingCycle).where(BillingCycle.stripe_invoice_id == invoice_id)
        return self._db.execute(stmt).scalar_one_or_none()

    def has_subscription(self, subscription_id: str) -> bool:
        """True if any cycle, in any state, references the Stripe subscription."""
        stmt = (
            select(BillingCycle.id)
            .where(BillingCycle.stripe_subscription_id == subscription_id)
            .limit(1)
        )
        return self._db.execute(stmt).first() is not None

    def by_subscription(
        self,
        subscription_id: str,
        statuses: Iterable[str] = LIVE_STATUSES,
    ) -> Optional[BillingCycle]:
        """Newest cycle for the Stripe subscription whose status is in ``statuses``."""
        stmt = (
            select(BillingCycle)
            .where(
                BillingCycle.stripe_subscription_id == subscription_id,
                BillingCycle.status.in_(tuple(statuses)),
            )
            .order_by(BillingCycle.created_at.desc())
            .limit(1)
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def live_cycles_with_stripe_id(self) -> list[BillingCycle]:
        stmt = (
            select(BillingCycle)
            .where(
                BillingCycle.status.in_(LIVE_STATUSES),
                BillingCycle.stripe_subscription_id.isnot(None),
            )
            .order_by(BillingCycle.period_end)
        )
        return list(self._db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Structural mutations
    # ------------------------------------------------------------------

    def create_cycle(self, new: NewCycle) -> UUID:
        """
        Insert the buyer's first ``active`` cycle for a subscription.

        Raises:
            ConsistencyError: If the buyer already has a live cycle, or the
                subscription already produced its initial cycle.
        """
        try:
            with self._db.begin_nested():
                existing = self.live_of(new.buyer_id)
                if existing is not None:
                    raise ConsistencyError(
                        f"Buyer {new.buyer_id} already has live cycle {existing.id}."
                    )
                cycle = self._insert(new)
        except IntegrityError as exc:
            raise ConsistencyError(
                f"Cycle for subscription {new.stripe_subscription_id} already exists."
            ) from exc

        after_commit(self._db, self._provisioner.grant_buyer_access, new.buyer_id)
        logger.info(
            "cycle_created: buyer=%s cycle=%s plan=%s limit=%d sub=%s",
            new.buyer_id, cycle.id, new.plan_id, new.seat_limit, new.stripe_subscription_id,
        )
        return cycle.id

    def renew(self, previous_cycle_id: UUID, new: NewCycle) -> UUID:
        """
        Supersede ``previous_cycle_id`` and insert the next ``active`` cycle.

        Both writes share one savepoint: either both are visible or neither.

        Raises:
            ConsistencyError: If the previous cycle is no longer
                active/past_due, or the insert violates a unique constraint.
        """
        try:
            with self._db.begin_nested():
                previous = self._lock(previous_cycle_id)
                if previous.buyer_id != new.buyer_id:
                    raise ConsistencyError(
                        f"Cycle {previous_cycle_id} belongs to buyer {previous.buyer_id}, "
                        f"not {new.buyer_id}."
                    )
                self._transition(previous_cycle_id, SUPERSEDED, (ACTIVE, PAST_DUE))
                cycle = self._insert(new)
        except IntegrityError as exc:
            raise ConsistencyError(
                f"Renewal of cycle {previous_cycle_id} violates a ledger constraint."
            ) from exc

        logger.info(
            "cycle_renewed: buyer=%s previous=%s cycle=%s invoice=%s limit=%d",
            new.buyer_id, previous_cycle_id, cycle.id, new.stripe_invoice_id, new.seat_limit,
        )
        return cycle.id

    def expire(self, cycle_id: UUID) -> bool:
        """
        Mark a live cycle ``expired`` and deactivate all of the buyer's seats.

        Returns False (no-op) if the cycle is already in a terminal state.
        """
        with self._db.begin_nested():
            cycle = self._lock(cycle_id)
            if cycle.status not in LIVE_STATUSES:
                logger.info("cycle_expire_skipped: cycle=%s status=%s", cycle_id, cycle.status)
                return False
            self._transition(cycle_id, EXPIRED, LIVE_STATUSES)
            dependents = self._deactivate_seats(cycle.buyer_id)

        self._revoke_after_commit(cycle.buyer_id, dependents)
        logger.info(
            "cycle_expired: buyer=%s cycle=%s seats_deactivated=%d",
            cycle.buyer_id, cycle_id, len(dependents),
        )
        return True

    def mark_past_due(self, cycle_id: UUID) -> bool:
        """``active -> past_due``; ``updated_at`` is touched either way."""
        with self._db.begin_nested():
            moved = self._transition(cycle_id, PAST_DUE, (ACTIVE,), strict=False)
            if not moved:
                self.touch(cycle_id)
        if moved:
            logger.info("cycle_past_due: cycle=%s", cycle_id)
        return moved

    def mark_recovered(self, cycle_id: UUID) -> bool:
        """``past_due -> active``."""
        with self._db.begin_nested():
            moved = self._transition(cycle_id, ACTIVE, (PAST_DUE,), strict=False)
        if moved:
            logger.info("cycle_recovered: cycle=%s", cycle_id)
        return moved

    def touch(self, cycle_id: UUID) -> None:
        self._db.execute(
            update(BillingCycle)
            .where(BillingCycle.id == cycle_id)
            .values(updated_at=datetime.utcnow())
        )

    # ------------------------------------------------------------------
    # Admin operations (Stripe first, then local state)
    # ------------------------------------------------------------------

    def request_cancellation(self, cycle_id: UUID, immediate: bool) -> BillingCycle:
        """
        Cancel through Stripe, then reflect it locally.

        Immediate: status ``cancelled`` right away and seats are torn down as
        on expiry; the later ``customer.subscription.deleted`` is a no-op.
        Deferred: only ``cancel_at_period_end`` is set; Stripe terminates the
        subscription at period end and the webhook expires the cycle.
        """
        cycle = self.get(cycle_id)
        allowed = (ACTIVE, PAST_DUE) if immediate else LIVE_STATUSES
        if cycle.status not in allowed:
            raise ConsistencyError(
                f"Cycle {cycle_id} is {cycle.status}; cannot cancel."
            )

        if cycle.stripe_subscription_id:
            gateway = self._require_gateway()
            if immediate:
                gateway.cancel_subscription(cycle.stripe_subscription_id)
            else:
                gateway.cancel_at_period_end(cycle.stripe_subscription_id)

        if not immediate:
            with self._db.begin_nested():
                self._db.execute(
                    update(BillingCycle)
                    .where(BillingCycle.id == cycle_id, BillingCycle.status.in_(LIVE_STATUSES))
                    .values(cancel_at_period_end=True, updated_at=datetime.utcnow())
                )
            logger.info("cycle_cancel_scheduled: buyer=%s cycle=%s", cycle.buyer_id, cycle_id)
            self._db.refresh(cycle)
            return cycle

        with self._db.begin_nested():
            self._lock(cycle_id)
            now = datetime.utcnow()
            self._transition(cycle_id, CANCELLED, (ACTIVE, PAST_DUE), cancelled_at=now)
            dependents = self._deactivate_seats(cycle.buyer_id)

        self._revoke_after_commit(cycle.buyer_id, dependents)
        logger.info(
            "cycle_cancelled: buyer=%s cycle=%s seats_deactivated=%d",
            cycle.buyer_id, cycle_id, len(dependents),
        )
        self._db.refresh(cycle)
        return cycle

    def pause(self, cycle_id: UUID) -> BillingCycle:
        cycle = self.get(cycle_id)
        if cycle.status != ACTIVE:
            raise ConsistencyError(f"Cycle {cycle_id} is {cycle.status}; only active cycles pause.")
        if cycle.stripe_subscription_id:
            self._require_gateway().pause_subscription(cycle.stripe_subscription_id)
        with self._db.begin_nested():
            self._transition(cycle_id, PAUSED, (ACTIVE,))
        logger.info("cycle_paused: buyer=%s cycle=%s", cycle.buyer_id, cycle_id)
        self._db.refresh(cycle)
        return cycle

    def resume(self, cycle_id: UUID) -> BillingCycle:
        cycle = self.get(cycle_id)
        if cycle.status != PAUSED:
            raise ConsistencyError(f"Cycle {cycle_id} is {cycle.status}; only paused cycles resume.")
        if cycle.stripe_subscription_id:
            self._require_gateway().resume_subscription(cycle.stripe_subscription_id)
        with self._db.begin_nested():
            self._transition(cycle_id, ACTIVE, (PAUSED,))
        logger.info("cycle_resumed: buyer=%s cycle=%s", cycle.buyer_id, cycle_id)
        self._db.refresh(cycle)
        return cycle

    def change_plan(self, cycle_id: UUID, new_plan_id: UUID) -> BillingCycle:
        """
        Move a live cycle to another plan mid-period (Stripe prorates).

        The one sanctioned in-place edit of a cycle's terms: plan, Stripe
        price, seat limit and billing cycle follow the new plan as resolved
        for this buyer. The billed price stays as charged for the period.
        """
        cycle = self.get(cycle_id)
        if cycle.status not in LIVE_STATUSES:
            raise ConsistencyError(f"Cycle {cycle_id} is {cycle.status}; cannot change plan.")

        pricing = PricingResolver(self._db).resolve(cycle.buyer_id, new_plan_id)
        if cycle.stripe_subscription_id:
            if not pricing.stripe_price_id:
                raise ConsistencyError(f"Plan {new_plan_id} has no Stripe price configured.")
            self._require_gateway().change_price(
                cycle.stripe_subscription_id, pricing.stripe_price_id,
            )

        with self._db.begin_nested():
            result = self._db.execute(
                update(BillingCycle)
                .where(BillingCycle.id == cycle_id, BillingCycle.status.in_(LIVE_STATUSES))
                .values(
                    plan_id=pricing.plan_id,
                    override_id=pricing.override_id,
                    stripe_price_id_used=pricing.stripe_price_id,
                    billed_seat_limit=pricing.seat_limit,
                    billing_cycle=pricing.billing_cycle,
                    updated_at=datetime.utcnow(),
                )
            )
            if result.rowcount != 1:
                raise ConsistencyError(f"Cycle {cycle_id} left the live state during plan change.")

        logger.info(
            "cycle_plan_changed: buyer=%s cycle=%s plan=%s limit=%d",
            cycle.buyer_id, cycle_id, new_plan_id, pricing.seat_limit,
        )
        self._db.refresh(cycle)
        return cycle

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _newest(
        self, buyer_id: int, statuses: Optional[Iterable[str]],
    ) -> Optional[BillingCycle]:
        stmt = select(BillingCycle).where(BillingCycle.buyer_id == buyer_id)
        if statuses is not None:
            stmt = stmt.where(BillingCycle.status.in_(tuple(statuses)))
        stmt = stmt.order_by(BillingCycle.created_at.desc(), BillingCycle.period_start.desc()).limit(1)
        return self._db.execute(stmt).scalar_one_or_none()

    def _lock(self, cycle_id: UUID) -> BillingCycle:
        stmt = (
            select(BillingCycle)
            .where(BillingCycle.id == cycle_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        cycle = self._db.execute(stmt).scalar_one_or_none()
        if cycle is None:
            raise NotFoundError(f"Billing cycle {cycle_id} not found.", code="cycle_not_found")
        return cycle

    def _transition(
        self,
        cycle_id: UUID,
        to_status: str,
        from_statuses: Iterable[str],
        strict: bool = True,
        **values: Any,
    ) -> bool:
        result = self._db.execute(
            update(BillingCycle)
            .where(
                BillingCycle.id == cycle_id,
                BillingCycle.status.in_(tuple(from_statuses)),
            )
            .values(status=to_status, updated_at=datetime.utcnow(), **values)
        )
        if result.rowcount == 1:
            return True
        if strict:
            raise ConsistencyError(
                f"Cycle {cycle_id} could not move to {to_status}: state changed concurrently."
            )
        return False

    def _insert(self, new: NewCycle) -> BillingCycle:
        cycle = BillingCycle(
            buyer_id=new.buyer_id,
            plan_id=new.plan_id,
            override_id=new.override_id,
            billed_price_cents=new.price_cents,
            billed_seat_limit=new.seat_limit,
            billing_cycle=new.billing_cycle,
            status=ACTIVE,
            stripe_subscription_id=new.stripe_subscription_id,
            stripe_customer_id=new.stripe_customer_id,
            stripe_invoice_id=new.stripe_invoice_id,
            stripe_payment_intent_id=new.stripe_payment_intent_id,
            stripe_price_id_used=new.stripe_price_id_used,
            period_start=new.period_start,
            period_end=new.period_end,
        )
        self._db.add(cycle)
        self._db.flush()
        return cycle

    def _deactivate_seats(self, buyer_id: int) -> list[int]:
        stmt = (
            select(Seat)
            .where(Seat.buyer_id == buyer_id, Seat.is_active.is_(True))
            .with_for_update()
        )
        seats = list(self._db.execute(stmt).scalars().all())
        for seat in seats:
            seat.is_active = False
        self._db.flush()
        return [seat.dependent_id for seat in seats]

    def _revoke_after_commit(self, buyer_id: int, dependents: list[int]) -> None:
        for dependent_id in dependents:
            after_commit(self._db, self._provisioner.revoke_seat_access, buyer_id, dependent_id)
        after_commit(self._db, self._provisioner.revoke_buyer_access, buyer_id)

    def _require_gateway(self) -> Any:
        if self._gateway is None:
            from mentorsub.services.stripe_gateway import StripeGateway

            self._gateway = StripeGateway.from_settings()
        return self._gateway
