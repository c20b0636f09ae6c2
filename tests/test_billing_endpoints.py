"""
HTTP tests for billing, seat and admin routes.
"""
from __future__ import annotations

from datetime import datetime

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from mentorsub.models.billing_cycle import PAST_DUE, BillingCycle
from mentorsub.models.stripe_event import StripeEvent
from tests.conftest import (
    FakeGateway,
    RecordingProvisioner,
    auth_headers,
    make_cycle,
    make_plan,
    make_seat,
    sign_payload,
    stripe_event,
)

BUYER = 801
ADMIN = 900


def _checkout_obj(plan, buyer_id: int = BUYER) -> dict:
    return {
        "id": "cs_1",
        "subscription": "sub_1",
        "customer": "cus_1",
        "metadata": {"buyer_id": str(buyer_id), "plan_id": str(plan.id)},
    }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    response = await client.get("/api/v1/ping")
    assert response.json()["message"] == "pong"


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_creates_cycle_and_grants_access(
    client: AsyncClient, db: Session, gateway: FakeGateway, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    gateway.add_subscription("sub_1", start=datetime(2026, 1, 1))
    payload = stripe_event("checkout.session.completed", _checkout_obj(plan), "evt_http")

    response = await client.post(
        "/api/v1/billing/webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload)},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "event": "checkout.session.completed"}
    assert db.query(BillingCycle).filter_by(buyer_id=BUYER).count() == 1
    assert provisioner.called("grant_buyer_access") == [(BUYER,)]


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    payload = stripe_event("checkout.session.completed", _checkout_obj(plan), "evt_http")

    response = await client.post(
        "/api/v1/billing/webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload, secret="whsec_other")},
    )

    assert response.status_code == 400
    assert db.query(BillingCycle).count() == 0


@pytest.mark.asyncio
async def test_webhook_internal_failure_is_acknowledged_and_logged(
    client: AsyncClient, db: Session, gateway: FakeGateway,
) -> None:
    plan = make_plan(db)
    gateway.add_subscription("sub_1")
    gateway.failing.add("sub_1")
    payload = stripe_event("checkout.session.completed", _checkout_obj(plan), "evt_fail")

    response = await client.post(
        "/api/v1/billing/webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload)},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "error_logged"
    record = db.query(StripeEvent).filter_by(event_id="evt_fail").one()
    assert record.status == "failed"
    assert db.query(BillingCycle).count() == 0


# ---------------------------------------------------------------------------
# Buyer routes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_session(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)

    response = await client.post(
        "/api/v1/billing/checkout",
        json={
            "plan_id": str(plan.id),
            "success_url": "http://localhost:3000/billing/ok",
            "cancel_url": "http://localhost:3000/billing/cancel",
        },
        headers=auth_headers(BUYER),
    )

    assert response.status_code == 200
    assert response.json()["session_id"] == "cs_1"


@pytest.mark.asyncio
async def test_checkout_rejects_foreign_return_url(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)

    response = await client.post(
        "/api/v1/billing/checkout",
        json={
            "plan_id": str(plan.id),
            "success_url": "https://evil.example.com/ok",
            "cancel_url": "http://localhost:3000/billing/cancel",
        },
        headers=auth_headers(BUYER),
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_subscription_summary(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan, seat_limit=3)
    make_seat(db, cycle, 501)

    response = await client.get("/api/v1/billing/subscription", headers=auth_headers(BUYER))

    body = response.json()
    assert body["has_subscription"] is True
    assert body["seat_limit"] == 3
    assert body["active_count"] == 1


@pytest.mark.asyncio
async def test_add_seat_and_limit_reached(
    client: AsyncClient, db: Session, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    make_cycle(db, BUYER, plan, seat_limit=1)

    created = await client.post(
        "/api/v1/seats", json={"dependent_id": 501}, headers=auth_headers(BUYER),
    )
    refused = await client.post(
        "/api/v1/seats", json={"dependent_id": 502}, headers=auth_headers(BUYER),
    )

    assert created.status_code == 201
    assert created.json()["active_count"] == 1
    assert provisioner.called("grant_seat_access") == [(BUYER, 501)]
    assert refused.status_code == 409
    assert refused.json()["detail"] == {"reason": "limit_reached", "active_count": 1, "seat_limit": 1}


@pytest.mark.asyncio
async def test_seat_status_toggle(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    make_seat(db, cycle, 501)

    off = await client.post(
        "/api/v1/seats/501/status", json={"active": False}, headers=auth_headers(BUYER),
    )
    missing = await client.post(
        "/api/v1/seats/599/status", json={"active": True}, headers=auth_headers(BUYER),
    )
    listed = await client.get("/api/v1/seats", headers=auth_headers(BUYER))

    assert off.status_code == 200
    assert off.json()["active_count"] == 0
    assert missing.status_code == 404
    assert listed.json()["seats"][0]["is_active"] is False


@pytest.mark.asyncio
async def test_past_due_buyer_sees_same_limit_everywhere(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan, status=PAST_DUE, seat_limit=2)
    make_seat(db, cycle, 501, is_active=False)

    listed = await client.get("/api/v1/seats", headers=auth_headers(BUYER))
    summary = await client.get("/api/v1/billing/subscription", headers=auth_headers(BUYER))
    toggled = await client.post(
        "/api/v1/seats/501/status", json={"active": True}, headers=auth_headers(BUYER),
    )

    assert listed.json()["seat_limit"] == 2
    assert summary.json()["status"] == PAST_DUE
    assert summary.json()["seat_limit"] == 2
    assert toggled.status_code == 200
    assert toggled.json()["seat_limit"] == 2


# ---------------------------------------------------------------------------
# Admin routes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)

    response = await client.post(
        f"/api/v1/admin/cycles/{cycle.id}/cancel",
        json={"immediate": True},
        headers=auth_headers(BUYER),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_immediate_cancel(
    client: AsyncClient, db: Session, gateway: FakeGateway, provisioner: RecordingProvisioner,
) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)
    make_seat(db, cycle, 501)

    response = await client.post(
        f"/api/v1/admin/cycles/{cycle.id}/cancel",
        json={"immediate": True},
        headers=auth_headers(ADMIN, roles=["admin"]),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert gateway.called("cancel_subscription") == [("sub_1",)]
    assert provisioner.called("revoke_seat_access") == [(BUYER, 501)]


@pytest.mark.asyncio
async def test_admin_resume_active_cycle_conflicts(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    cycle = make_cycle(db, BUYER, plan)

    response = await client.post(
        f"/api/v1/admin/cycles/{cycle.id}/resume",
        headers=auth_headers(ADMIN, roles=["admin"]),
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_admin_override_and_pricing_preview(client: AsyncClient, db: Session) -> None:
    plan = make_plan(db)
    headers = auth_headers(ADMIN, roles=["manager"])

    saved = await client.put(
        "/api/v1/admin/overrides",
        json={
            "buyer_id": BUYER,
            "plan_id": str(plan.id),
            "seat_limit_override": 12,
            "valid_from": "2020-01-01T00:00:00",
        },
        headers=headers,
    )
    preview = await client.get(f"/api/v1/admin/buyers/{BUYER}/pricing/{plan.id}", headers=headers)

    assert saved.status_code == 200
    assert preview.status_code == 200
    assert preview.json()["seat_limit"] == 12
    assert preview.json()["price_cents"] == 2900
