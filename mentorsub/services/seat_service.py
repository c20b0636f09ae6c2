"""
Seat management - capacity enforcement for a buyer's mentees.

Capacity refusals are returned as ``SeatResult`` reason codes, not raised.
Every activation serializes on the buyer's live cycle row (SELECT ... FOR
UPDATE) so two concurrent activations cannot both pass the count check.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentorsub.core.side_effects import after_commit
from mentorsub.models.billing_cycle import ACTIVE, LIVE_STATUSES, BillingCycle
from mentorsub.models.seat import Seat
from mentorsub.services.provisioning_service import TaskProvisioner

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION = "no_subscription"
NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
LIMIT_REACHED = "limit_reached"
NOT_FOUND = "not_found"
DEPENDENT_NOT_FOUND = "dependent_not_found"
ALREADY_ASSIGNED = "already_assigned"


@dataclass
class SeatResult:
    """Outcome of a seat operation."""

    success: bool
    reason: Optional[str] = None
    active_count: int = 0
    seat_limit: Optional[int] = None
    seat: Optional[Seat] = None


class CapacityGuard:
    """
    Enforces ``active seats <= billed_seat_limit`` of the buyer's live cycle.

    ``host`` must answer ``user_exists(user_id)``; ``provisioner`` receives
    the after-commit grant/revoke/notify calls.
    """

    def __init__(self, db: Session, host: Any, provisioner: Any = None) -> None:
        self._db = db
        self._host = host
        self._provisioner = provisioner or TaskProvisioner()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count_active(self, buyer_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(Seat)
            .where(Seat.buyer_id == buyer_id, Seat.is_active.is_(True))
        )
        return self._db.execute(stmt).scalar_one()

    def list_seats(self, buyer_id: int) -> list[Seat]:
        stmt = (
            select(Seat)
            .where(Seat.buyer_id == buyer_id)
            .order_by(Seat.is_active.desc(), Seat.created_at)
        )
        return list(self._db.execute(stmt).scalars().all())

    def get_seat(self, buyer_id: int, dependent_id: int) -> Optional[Seat]:
        stmt = select(Seat).where(Seat.buyer_id == buyer_id, Seat.dependent_id == dependent_id)
        return self._db.execute(stmt).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_seat_active(self, buyer_id: int, dependent_id: int, active: bool) -> SeatResult:
        """
        Activate or deactivate an existing seat.

        Deactivation always succeeds when the seat exists. Activation needs a
        live (active, past_due or paused) cycle with spare capacity.
        """
        if not active:
            return self._deactivate(buyer_id, dependent_id)

        with self._db.begin_nested():
            cycle = self._lock_cycle(buyer_id, LIVE_STATUSES)
            seat = self.get_seat(buyer_id, dependent_id)
            if seat is None:
                return SeatResult(success=False, reason=NOT_FOUND)
            if cycle is None:
                return SeatResult(
                    success=False,
                    reason=NO_SUBSCRIPTION,
                    active_count=self.count_active(buyer_id),
                )

            count = self.count_active(buyer_id)
            if seat.is_active:
                return SeatResult(
                    success=True, active_count=count,
                    seat_limit=cycle.billed_seat_limit, seat=seat,
                )
            if count >= cycle.billed_seat_limit:
                logger.info(
                    "seat_limit_reached: buyer=%s dependent=%s count=%d limit=%d",
                    buyer_id, dependent_id, count, cycle.billed_seat_limit,
                )
                return SeatResult(
                    success=False, reason=LIMIT_REACHED,
                    active_count=count, seat_limit=cycle.billed_seat_limit,
                )

            seat.is_active = True
            seat.cycle_id = cycle.id
            self._db.flush()

        after_commit(self._db, self._provisioner.grant_seat_access, buyer_id, dependent_id)
        logger.info(
            "seat_activated: buyer=%s dependent=%s count=%d limit=%d",
            buyer_id, dependent_id, count + 1, cycle.billed_seat_limit,
        )
        return SeatResult(
            success=True, active_count=count + 1,
            seat_limit=cycle.billed_seat_limit, seat=seat,
        )

    def add_seat(self, buyer_id: int, dependent_id: int) -> SeatResult:
        """
        Create a new active seat for ``dependent_id``.

        Checks short-circuit in order: strictly active cycle, capacity,
        dependent exists on the host, dependent not owned by any buyer.
        """
        with self._db.begin_nested():
            cycle = self._lock_cycle(buyer_id, (ACTIVE,))
            if cycle is None:
                return SeatResult(success=False, reason=NO_ACTIVE_SUBSCRIPTION)

            count = self.count_active(buyer_id)
            if count >= cycle.billed_seat_limit:
                return SeatResult(
                    success=False, reason=LIMIT_REACHED,
                    active_count=count, seat_limit=cycle.billed_seat_limit,
                )

            if not self._host.user_exists(dependent_id):
                return SeatResult(
                    success=False, reason=DEPENDENT_NOT_FOUND,
                    active_count=count, seat_limit=cycle.billed_seat_limit,
                )

            owned = self._db.execute(
                select(Seat.id).where(Seat.dependent_id == dependent_id)
            ).first()
            if owned is not None:
                return SeatResult(
                    success=False, reason=ALREADY_ASSIGNED,
                    active_count=count, seat_limit=cycle.billed_seat_limit,
                )

        try:
            with self._db.begin_nested():
                seat = Seat(
                    buyer_id=buyer_id,
                    dependent_id=dependent_id,
                    cycle_id=cycle.id,
                    is_active=True,
                )
                self._db.add(seat)
                self._db.flush()
        except IntegrityError:
            # Lost the race on the global dependent_id uniqueness
            return SeatResult(
                success=False, reason=ALREADY_ASSIGNED,
                active_count=count, seat_limit=cycle.billed_seat_limit,
            )

        after_commit(self._db, self._provisioner.grant_seat_access, buyer_id, dependent_id)
        after_commit(
            self._db, self._provisioner.send_notification, dependent_id,
            "You have been added as a mentee",
            "Your mentor has added you to their subscription. You now have access to the mentoring courses.",
        )
        after_commit(
            self._db, self._provisioner.send_notification, buyer_id,
            "Mentee added",
            f"User {dependent_id} has been added to your subscription.",
        )
        logger.info(
            "seat_added: buyer=%s dependent=%s count=%d limit=%d",
            buyer_id, dependent_id, count + 1, cycle.billed_seat_limit,
        )
        return SeatResult(
            success=True, active_count=count + 1,
            seat_limit=cycle.billed_seat_limit, seat=seat,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deactivate(self, buyer_id: int, dependent_id: int) -> SeatResult:
        with self._db.begin_nested():
            seat = self.get_seat(buyer_id, dependent_id)
            if seat is None:
                return SeatResult(success=False, reason=NOT_FOUND)
            was_active = seat.is_active
            seat.is_active = False
            self._db.flush()

        count = self.count_active(buyer_id)
        if was_active:
            after_commit(self._db, self._provisioner.revoke_seat_access, buyer_id, dependent_id)
            after_commit(
                self._db, self._provisioner.send_notification, dependent_id,
                "Mentee access removed",
                "Your mentor has removed you from their subscription.",
            )
            logger.info(
                "seat_deactivated: buyer=%s dependent=%s count=%d",
                buyer_id, dependent_id, count,
            )
        return SeatResult(success=True, active_count=count, seat=seat)

    def _lock_cycle(self, buyer_id: int, statuses: tuple[str, ...]) -> Optional[BillingCycle]:
        stmt = (
            select(BillingCycle)
            .where(BillingCycle.buyer_id == buyer_id, BillingCycle.status.in_(statuses))
            .order_by(BillingCycle.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        return self._db.execute(stmt).scalar_one_or_none()
