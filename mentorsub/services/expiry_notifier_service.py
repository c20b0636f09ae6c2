"""
Expiry reminders - at most one message per (cycle, threshold).
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentorsub.core.config import settings
from mentorsub.models.billing_cycle import ACTIVE, BillingCycle
from mentorsub.models.processed_notification import ProcessedNotification

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "expiry"


class ExpiryNotifier:
    """
    Sends "your subscription ends in N days" reminders.

    ``sender`` must expose ``send_message(recipient_id, subject, body)``
    returning a message id. A failed send is not recorded, so the next run
    retries it. Each delivered reminder is committed as soon as it is
    recorded; a failure later in the run cannot undo it.
    """

    def __init__(
        self,
        db: Session,
        sender: Any,
        thresholds: Optional[list[int]] = None,
    ) -> None:
        self._db = db
        self._sender = sender
        self._thresholds = thresholds if thresholds is not None else settings.expiry_warning_days_list

    def run(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Returns:
            Counters: checked, sent, skipped, errors.
        """
        now = now or datetime.utcnow()
        counters = {"checked": 0, "sent": 0, "skipped": 0, "errors": 0}

        for threshold in self._thresholds:
            window_start = now + timedelta(days=threshold)
            window_end = window_start + timedelta(days=1)
            for cycle in self._cycles_ending_between(window_start, window_end):
                counters["checked"] += 1
                if self._already_sent(cycle.id, threshold):
                    counters["skipped"] += 1
                    continue
                if self._notify(cycle, threshold):
                    counters["sent"] += 1
                else:
                    counters["errors"] += 1

        logger.info(
            "expiry_notifications_done: checked=%d sent=%d skipped=%d errors=%d",
            counters["checked"], counters["sent"], counters["skipped"], counters["errors"],
        )
        return counters

    def _cycles_ending_between(self, start: datetime, end: datetime) -> list[BillingCycle]:
        stmt = (
            select(BillingCycle)
            .where(
                BillingCycle.status == ACTIVE,
                BillingCycle.period_end >= start,
                BillingCycle.period_end < end,
            )
            .order_by(BillingCycle.period_end)
        )
        return list(self._db.execute(stmt).scalars().all())

    def _already_sent(self, cycle_id: Any, threshold: int) -> bool:
        stmt = select(ProcessedNotification.id).where(
            ProcessedNotification.cycle_id == cycle_id,
            ProcessedNotification.notification_type == NOTIFICATION_TYPE,
            ProcessedNotification.threshold == threshold,
        )
        return self._db.execute(stmt).first() is not None

    def _notify(self, cycle: BillingCycle, threshold: int) -> bool:
        subject = f"Your mentor subscription ends in {threshold} days"
        body = (
            f"Your mentor subscription is due to end on "
            f"{cycle.period_end:%Y-%m-%d}. "
            + (
                "It is set to cancel and will not renew."
                if cycle.cancel_at_period_end
                else "It will renew automatically unless cancelled."
            )
        )
        try:
            message_id = self._sender.send_message(cycle.buyer_id, subject, body)
        except Exception:
            logger.exception(
                "expiry_notification_failed: cycle=%s buyer=%s threshold=%d",
                cycle.id, cycle.buyer_id, threshold,
            )
            return False

        try:
            self._db.add(
                ProcessedNotification(
                    cycle_id=cycle.id,
                    notification_type=NOTIFICATION_TYPE,
                    threshold=threshold,
                    message_id=message_id,
                )
            )
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            # A concurrent run recorded it first
            logger.warning("expiry_notification_duplicate: cycle=%s threshold=%d", cycle.id, threshold)
            return True
        logger.info(
            "expiry_notification_sent: cycle=%s buyer=%s threshold=%d message_id=%s",
            cycle.id, cycle.buyer_id, threshold, message_id,
        )
        return True
