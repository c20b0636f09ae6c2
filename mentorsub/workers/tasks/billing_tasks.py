"""
Periodic billing jobs (Celery Beat).

- reconcile_subscriptions: repairs cycle state from Stripe
- check_expiring_subscriptions: sends expiry reminders

Both hold a Redis run lock so a slow run is never overlapped by the next.
"""
from __future__ import annotations

import logging

from mentorsub.core.config import settings
from mentorsub.core.locks import job_lock
from mentorsub.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="mentorsub.workers.tasks.billing_tasks.reconcile_subscriptions")
def reconcile_subscriptions() -> dict:
    """Compare every live cycle with Stripe and apply missing transitions."""
    from mentorsub.core.database_sync import get_sync_db
    from mentorsub.services.errors import StripeNotConfiguredError
    from mentorsub.services.reconciliation_service import Reconciler
    from mentorsub.services.stripe_gateway import StripeGateway

    try:
        gateway = StripeGateway.from_settings()
    except StripeNotConfiguredError:
        logger.warning("reconcile_subscriptions: Stripe not configured, skipping.")
        return {"checked": 0, "expired": 0, "past_due": 0, "recovered": 0, "errors": 0}

    with job_lock("reconcile_subscriptions") as acquired:
        if not acquired:
            return {"skipped": "locked"}
        with get_sync_db() as db:
            result = Reconciler(db, gateway).run()

    logger.info("reconcile_subscriptions: %s", result)
    return result


@celery_app.task(name="mentorsub.workers.tasks.billing_tasks.check_expiring_subscriptions")
def check_expiring_subscriptions() -> dict:
    """Send one reminder per (cycle, threshold) for cycles about to end."""
    from mentorsub.core.database_sync import get_sync_db
    from mentorsub.services.expiry_notifier_service import ExpiryNotifier
    from mentorsub.services.host_client import HostClient

    if not settings.SEND_EXPIRY_WARNINGS:
        logger.info("check_expiring_subscriptions: warnings disabled, skipping.")
        return {"checked": 0, "sent": 0, "skipped": 0, "errors": 0}

    with job_lock("check_expiring_subscriptions") as acquired:
        if not acquired:
            return {"skipped": "locked"}
        with HostClient.from_settings() as host, get_sync_db() as db:
            result = ExpiryNotifier(db, host).run()

    logger.info("check_expiring_subscriptions: %s", result)
    return result
