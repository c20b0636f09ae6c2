"""
Celery task tests: periodic jobs run in-process with patched collaborators.
"""
from __future__ import annotations

from contextlib import contextmanager
from unittest.mock import patch

from sqlalchemy.orm import Session

from mentorsub.models.billing_cycle import EXPIRED, BillingCycle
from mentorsub.services.errors import StripeNotConfiguredError
from mentorsub.services.stripe_gateway import StripeGateway
from mentorsub.workers.tasks import billing_tasks
from tests.conftest import FakeGateway, make_cycle, make_plan


def _lock(acquired: bool):
    @contextmanager
    def fake_job_lock(name, timeout=None):
        yield acquired

    return fake_job_lock


def _sync_db(db: Session):
    @contextmanager
    def fake_get_sync_db():
        yield db
        db.commit()

    return fake_get_sync_db


def test_reconcile_task_expires_terminated_cycles(db: Session, gateway: FakeGateway) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, 901, plan, subscription_id="sub_t")
    gateway.add_subscription("sub_t", status="canceled")

    with patch.object(StripeGateway, "from_settings", return_value=gateway), \
            patch.object(billing_tasks, "job_lock", _lock(True)), \
            patch("mentorsub.core.database_sync.get_sync_db", _sync_db(db)), \
            patch("mentorsub.services.provisioning_service.TaskProvisioner.revoke_buyer_access"):
        result = billing_tasks.reconcile_subscriptions()

    assert result["expired"] == 1
    db.expire_all()
    assert db.get(BillingCycle, cycle.id).status == EXPIRED


def test_reconcile_task_skips_when_locked(gateway: FakeGateway) -> None:
    with patch.object(StripeGateway, "from_settings", return_value=gateway), \
            patch.object(billing_tasks, "job_lock", _lock(False)):
        result = billing_tasks.reconcile_subscriptions()

    assert result == {"skipped": "locked"}
    assert gateway.calls == []


def test_reconcile_task_without_stripe_config() -> None:
    with patch.object(StripeGateway, "from_settings", side_effect=StripeNotConfiguredError()):
        result = billing_tasks.reconcile_subscriptions()

    assert result["checked"] == 0


def test_expiry_task_disabled_by_setting() -> None:
    with patch.object(billing_tasks.settings, "SEND_EXPIRY_WARNINGS", False):
        result = billing_tasks.check_expiring_subscriptions()

    assert result["sent"] == 0
