"""
Ledger tests: lifecycle transitions, atomic renewal, expiry and admin actions.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy.orm import Session

from mentorsub.core.side_effects import pending_count
from mentorsub.models.billing_cycle import (
    ACTIVE,
    CANCELLED,
    EXPIRED,
    PAST_DUE,
    PAUSED,
    SUPERSEDED,
    BillingCycle,
)
from mentorsub.models.seat import Seat
from mentorsub.services.errors import ConsistencyError
from mentorsub.services.ledger_service import Ledger, NewCycle
from tests.conftest import (
    FakeGateway,
    RecordingProvisioner,
    live_count,
    make_cycle,
    make_plan,
    make_seat,
)

BUYER = 201
OTHER_BUYER = 202


def _new_cycle(plan: Any, start: datetime, buyer_id: int = BUYER, **ids: Any) -> NewCycle:
    return NewCycle(
        buyer_id=buyer_id,
        plan_id=plan.id,
        price_cents=plan.price_cents,
        seat_limit=plan.default_seat_limit,
        billing_cycle=plan.billing_cycle,
        period_start=start,
        period_end=start + timedelta(days=30),
        **ids,
    )


def _reload(db: Session, cycle_id: Any) -> BillingCycle:
    db.expire_all()
    return db.get(BillingCycle, cycle_id)


# ---------------------------------------------------------------------------
# create_cycle
# ---------------------------------------------------------------------------

def test_create_cycle_inserts_active_row_and_grants_after_commit(
    db: Session, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    ledger = Ledger(db, provisioner=provisioner)

    cycle_id = ledger.create_cycle(
        _new_cycle(plan, datetime(2026, 1, 1), stripe_subscription_id="sub_new")
    )

    cycle = ledger.get(cycle_id)
    assert cycle.status == ACTIVE
    assert cycle.billed_seat_limit == 3
    assert provisioner.calls == []

    db.commit()
    assert provisioner.called("grant_buyer_access") == [(BUYER,)]


def test_create_cycle_refuses_second_live_cycle(db: Session, provisioner: RecordingProvisioner) -> None:
    plan = make_plan(db)
    make_cycle(db, BUYER, plan)

    with pytest.raises(ConsistencyError):
        Ledger(db, provisioner=provisioner).create_cycle(
            _new_cycle(plan, datetime(2026, 1, 1), stripe_subscription_id="sub_other")
        )

    assert live_count(db, BUYER) == 1
    assert pending_count(db) == 0


def test_create_cycle_refuses_second_initial_cycle_for_subscription(db: Session) -> None:
    plan = make_plan(db)
    make_cycle(db, BUYER, plan, status=EXPIRED, subscription_id="sub_dup")

    with pytest.raises(ConsistencyError):
        Ledger(db, provisioner=RecordingProvisioner()).create_cycle(
            _new_cycle(plan, datetime(2026, 1, 1), stripe_subscription_id="sub_dup")
        )


def test_new_cycle_validates_period() -> None:
    with pytest.raises(ValueError):
        NewCycle(
            buyer_id=BUYER,
            plan_id=None,
            price_cents=100,
            seat_limit=1,
            billing_cycle="monthly",
            period_start=datetime(2026, 2, 1),
            period_end=datetime(2026, 1, 1),
        )


# ---------------------------------------------------------------------------
# renew
# ---------------------------------------------------------------------------

def test_renew_supersedes_previous_and_inserts_next(db: Session) -> None:
    plan = make_plan(db)
    previous = make_cycle(db, BUYER, plan, period_start=datetime(2026, 1, 1))
    ledger = Ledger(db, provisioner=RecordingProvisioner())

    new_id = ledger.renew(
        previous.id,
        _new_cycle(plan, datetime(2026, 1, 31), stripe_subscription_id="sub_1", stripe_invoice_id="in_2"),
    )

    assert _reload(db, previous.id).status == SUPERSEDED
    renewed = db.get(BillingCycle, new_id)
    assert renewed.status == ACTIVE
    assert renewed.stripe_invoice_id == "in_2"
    assert live_count(db, BUYER) == 1


def test_renew_from_past_due(db: Session) -> None:
    plan = make_plan(db)
    previous = make_cycle(db, BUYER, plan, status=PAST_DUE)

    Ledger(db).renew(previous.id, _new_cycle(plan, datetime(2026, 3, 1), stripe_invoice_id="in_3"))

    assert _reload(db, previous.id).status == SUPERSEDED
    assert live_count(db, BUYER) == 1


def test_renew_failure_mid_operation_leaves_nothing_applied(db: Session) -> None:
    """Supersede and insert are all-or-nothing."""
    plan = make_plan(db)
    previous = make_cycle(db, BUYER, plan)
    ledger = Ledger(db)

    with patch.object(Ledger, "_insert", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            ledger.renew(previous.id, _new_cycle(plan, datetime(2026, 2, 1), stripe_invoice_id="in_x"))

    assert _reload(db, previous.id).status == ACTIVE
    assert db.query(BillingCycle).count() == 1


def test_renew_with_duplicate_invoice_rolls_back_supersede(db: Session) -> None:
    plan = make_plan(db)
    make_cycle(db, OTHER_BUYER, plan, subscription_id="sub_9", stripe_invoice_id="in_dup")
    previous = make_cycle(db, BUYER, plan)

    with pytest.raises(ConsistencyError):
        Ledger(db).renew(previous.id, _new_cycle(plan, datetime(2026, 2, 1), stripe_invoice_id="in_dup"))

    assert _reload(db, previous.id).status == ACTIVE
    assert live_count(db, BUYER) == 1


def test_renew_of_terminal_cycle_is_rejected(db: Session) -> None:
    plan = make_plan(db)
    previous = make_cycle(db, BUYER, plan, status=EXPIRED)

    with pytest.raises(ConsistencyError):
        Ledger(db).renew(previous.id, _new_cycle(plan, datetime(2026, 2, 1), stripe_invoice_id="in_4"))

    assert _reload(db, previous.id).status == EXPIRED
    assert live_count(db, BUYER) == 0


# ---------------------------------------------------------------------------
# expire
# ---------------------------------------------------------------------------

def test_expire_deactivates_only_that_buyers_seats(
    db: Session, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    other = make_cycle(db, OTHER_BUYER, plan, subscription_id="sub_2")
    make_seat(db, cycle, 501)
    make_seat(db, cycle, 502)
    make_seat(db, other, 503)

    assert Ledger(db, provisioner=provisioner).expire(cycle.id) is True
    db.commit()

    assert _reload(db, cycle.id).status == EXPIRED
    seats = {seat.dependent_id: seat.is_active for seat in db.query(Seat).all()}
    assert seats == {501: False, 502: False, 503: True}
    assert sorted(provisioner.called("revoke_seat_access")) == [(BUYER, 501), (BUYER, 502)]
    assert provisioner.called("revoke_buyer_access") == [(BUYER,)]


def test_expire_is_noop_on_terminal_cycle(db: Session, provisioner: RecordingProvisioner) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan, status=CANCELLED)

    assert Ledger(db, provisioner=provisioner).expire(cycle.id) is False
    db.commit()

    assert provisioner.calls == []


def test_expire_side_effects_dropped_on_rollback(
    db: Session, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    make_seat(db, cycle, 501)
    db.commit()

    Ledger(db, provisioner=provisioner).expire(cycle.id)
    db.rollback()
    db.commit()

    assert provisioner.calls == []
    assert _reload(db, cycle.id).status == ACTIVE


# ---------------------------------------------------------------------------
# past_due / recovery
# ---------------------------------------------------------------------------

def test_mark_past_due_and_recovered(db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    ledger = Ledger(db)

    assert ledger.mark_past_due(cycle.id) is True
    assert _reload(db, cycle.id).status == PAST_DUE
    assert ledger.mark_past_due(cycle.id) is False

    assert ledger.mark_recovered(cycle.id) is True
    assert _reload(db, cycle.id).status == ACTIVE
    assert ledger.mark_recovered(cycle.id) is False


def test_mark_past_due_touches_updated_at_when_not_active(db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan, status=PAUSED)
    cycle.updated_at = datetime(2020, 1, 1)
    db.flush()

    assert Ledger(db).mark_past_due(cycle.id) is False

    reloaded = _reload(db, cycle.id)
    assert reloaded.status == PAUSED
    assert reloaded.updated_at > datetime(2020, 1, 1)


def test_past_due_cycle_is_live_but_not_active(db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan, status=PAST_DUE, seat_limit=4)
    ledger = Ledger(db)

    assert ledger.active_of(BUYER) is None
    assert ledger.live_of(BUYER).id == cycle.id
    assert ledger.live_of(BUYER).billed_seat_limit == 4


# ---------------------------------------------------------------------------
# Admin actions
# ---------------------------------------------------------------------------

def test_immediate_cancellation_calls_stripe_then_cancels_locally(
    db: Session, gateway: FakeGateway, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    make_seat(db, cycle, 501)
    ledger = Ledger(db, provisioner=provisioner, gateway=gateway)

    result = ledger.request_cancellation(cycle.id, immediate=True)
    db.commit()

    assert gateway.called("cancel_subscription") == [("sub_1",)]
    assert result.status == CANCELLED
    assert result.cancelled_at is not None
    assert provisioner.called("revoke_seat_access") == [(BUYER, 501)]

    # Stripe's later termination event finds nothing live
    assert ledger.expire(cycle.id) is False


def test_deferred_cancellation_only_sets_flag(db: Session, gateway: FakeGateway) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)

    result = Ledger(db, gateway=gateway).request_cancellation(cycle.id, immediate=False)

    assert gateway.called("cancel_at_period_end") == [("sub_1",)]
    assert result.status == ACTIVE
    assert result.cancel_at_period_end is True


def test_cancellation_stays_local_untouched_when_stripe_fails(db: Session, gateway: FakeGateway) -> None:
    from mentorsub.services.errors import PaymentProviderError

    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    gateway.failing.add("sub_1")

    with pytest.raises(PaymentProviderError):
        Ledger(db, gateway=gateway).request_cancellation(cycle.id, immediate=True)

    assert _reload(db, cycle.id).status == ACTIVE


def test_pause_and_resume(db: Session, gateway: FakeGateway) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    ledger = Ledger(db, gateway=gateway)

    assert ledger.pause(cycle.id).status == PAUSED
    assert ledger.active_of(BUYER) is None
    assert ledger.live_of(BUYER).id == cycle.id

    assert ledger.resume(cycle.id).status == ACTIVE
    assert gateway.called("pause_subscription") == [("sub_1",)]
    assert gateway.called("resume_subscription") == [("sub_1",)]


def test_resume_requires_paused(db: Session, gateway: FakeGateway) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)

    with pytest.raises(ConsistencyError):
        Ledger(db, gateway=gateway).resume(cycle.id)

    assert gateway.calls == []


def test_change_plan_updates_limit_and_price_id(db: Session, gateway: FakeGateway) -> None:
    basic = make_plan(db)
    pro = make_plan(db, name="pro", price_cents=4900, default_seat_limit=8)
    cycle = make_cycle(db, BUYER, basic)

    result = Ledger(db, gateway=gateway).change_plan(cycle.id, pro.id)

    assert gateway.called("change_price") == [("sub_1", "price_pro")]
    assert result.plan_id == pro.id
    assert result.billed_seat_limit == 8
    assert result.stripe_price_id_used == "price_pro"
    assert result.billed_price_cents == basic.price_cents


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def test_history_is_newest_first(db: Session) -> None:
    plan = make_plan(db)
    first = make_cycle(db, BUYER, plan, status=SUPERSEDED, period_start=datetime(2026, 1, 1))
    second = make_cycle(
        db, BUYER, plan, period_start=datetime(2026, 1, 31), stripe_invoice_id="in_2",
    )

    history = Ledger(db).history_of(BUYER)

    assert [cycle.id for cycle in history] == [second.id, first.id]


def test_live_cycles_with_stripe_id(db: Session) -> None:
    plan = make_plan(db)
    live = make_cycle(db, BUYER, plan)
    make_cycle(db, OTHER_BUYER, plan, subscription_id=None)
    make_cycle(db, 203, plan, status=EXPIRED, subscription_id="sub_3")

    assert [cycle.id for cycle in Ledger(db).live_cycles_with_stripe_id()] == [live.id]
