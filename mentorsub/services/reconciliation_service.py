"""
Reconciliation - repair local cycle state from Stripe's own records.

Catches lost or reordered webhooks. Each cycle is handled in its own
transaction, committed before the next Stripe call. A Stripe
failure or a local error for one cycle is logged, counted and rolled back,
and the run moves on.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from mentorsub.models.billing_cycle import ACTIVE, LIVE_STATUSES, PAST_DUE
from mentorsub.services.errors import PaymentProviderError
from mentorsub.services.ledger_service import Ledger

logger = logging.getLogger(__name__)

TERMINATED = frozenset({"canceled", "unpaid", "incomplete_expired"})
PAYMENT_FAILED = frozenset({"past_due"})
HEALTHY = frozenset({"active", "trialing"})


class Reconciler:
    """Polls Stripe for every live cycle and applies the missing transition."""

    def __init__(self, db: Session, gateway: Any, provisioner: Any = None) -> None:
        self._db = db
        self._gateway = gateway
        self._ledger = Ledger(db, provisioner=provisioner, gateway=gateway)

    def run(self) -> dict[str, int]:
        """
        Reconcile all live cycles with a Stripe subscription id.

        Returns:
            Counters: checked, expired, past_due, recovered, errors.
        """
        counters = {"checked": 0, "expired": 0, "past_due": 0, "recovered": 0, "errors": 0}

        cycle_ids = [cycle.id for cycle in self._ledger.live_cycles_with_stripe_id()]
        for cycle_id in cycle_ids:
            counters["checked"] += 1
            try:
                action = self.reconcile_cycle(cycle_id)
                self._db.commit()
            except PaymentProviderError as exc:
                self._db.rollback()
                counters["errors"] += 1
                logger.warning("reconcile_fetch_failed: cycle=%s %s", cycle_id, exc.detail)
                continue
            except Exception:
                self._db.rollback()
                counters["errors"] += 1
                logger.exception("reconcile_cycle_failed: cycle=%s", cycle_id)
                continue
            if action:
                counters[action] += 1

        logger.info(
            "reconcile_done: checked=%d expired=%d past_due=%d recovered=%d errors=%d",
            counters["checked"], counters["expired"], counters["past_due"],
            counters["recovered"], counters["errors"],
        )
        return counters

    def reconcile_cycle(self, cycle_id: Any) -> str | None:
        """Apply at most one transition; returns the counter name or None."""
        cycle = self._ledger.get(cycle_id)
        if cycle.status not in LIVE_STATUSES or not cycle.stripe_subscription_id:
            return None

        remote = self._gateway.retrieve_subscription(cycle.stripe_subscription_id)
        remote_status = remote.status

        if remote_status in TERMINATED:
            if self._ledger.expire(cycle.id):
                logger.info(
                    "reconcile_expired: cycle=%s sub=%s stripe_status=%s",
                    cycle.id, cycle.stripe_subscription_id, remote_status,
                )
                return "expired"
        elif remote_status in PAYMENT_FAILED and cycle.status == ACTIVE:
            if self._ledger.mark_past_due(cycle.id):
                return "past_due"
        elif remote_status in HEALTHY and cycle.status == PAST_DUE:
            if self._ledger.mark_recovered(cycle.id):
                return "recovered"
        return None
