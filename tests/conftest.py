"""
Pytest fixtures: in-memory SQLite ledger, recording fakes and an API client.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import mentorsub.core.side_effects  # noqa: F401
import mentorsub.models  # noqa: F401
from mentorsub.core.database import Base, get_db
from mentorsub.core.dependencies import (
    get_host_client,
    get_provisioner,
    get_stripe_gateway,
    get_webhook_gateway,
)
from mentorsub.core.security import create_access_token
from mentorsub.main import app
from mentorsub.models.billing_cycle import ACTIVE, BillingCycle
from mentorsub.models.managed_course import ManagedCourse
from mentorsub.models.plan import Plan
from mentorsub.models.plan_override import PlanOverride
from mentorsub.models.seat import Seat
from mentorsub.services.errors import PaymentProviderError
from mentorsub.services.stripe_gateway import ProcessorSubscription

WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """
    Stripe gateway stand-in. Subscriptions are looked up in ``subscriptions``;
    ids listed in ``failing`` raise PaymentProviderError.
    """

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.webhook_secret = webhook_secret
        self.subscriptions: dict[str, ProcessorSubscription] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def add_subscription(
        self,
        subscription_id: str,
        status: str = "active",
        start: Optional[datetime] = None,
        days: int = 30,
        price_id: str = "price_basic",
    ) -> ProcessorSubscription:
        start = start or datetime(2026, 1, 1)
        sub = ProcessorSubscription(
            id=subscription_id,
            status=status,
            customer_id="cus_1",
            current_period_start=start,
            current_period_end=start + timedelta(days=days),
            item_id="si_1",
            price_id=price_id,
        )
        self.subscriptions[subscription_id] = sub
        return sub

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        self.calls.append(("retrieve_subscription", (subscription_id,)))
        if subscription_id in self.failing:
            raise PaymentProviderError(f"network error for {subscription_id}")
        return self.subscriptions[subscription_id]

    def create_checkout_session(self, **kwargs: Any) -> dict[str, str]:
        self.calls.append(("create_checkout_session", (kwargs,)))
        return {"checkout_url": "https://checkout.stripe.test/s/cs_1", "session_id": "cs_1"}

    def cancel_subscription(self, subscription_id: str) -> None:
        self._record("cancel_subscription", subscription_id)

    def cancel_at_period_end(self, subscription_id: str) -> None:
        self._record("cancel_at_period_end", subscription_id)

    def pause_subscription(self, subscription_id: str) -> None:
        self._record("pause_subscription", subscription_id)

    def resume_subscription(self, subscription_id: str) -> None:
        self._record("resume_subscription", subscription_id)

    def change_price(self, subscription_id: str, price_id: str) -> None:
        self._record("change_price", subscription_id, price_id)

    def _record(self, name: str, *args: Any) -> None:
        if args and args[0] in self.failing:
            raise PaymentProviderError(f"{name} failed")
        self.calls.append((name, args))

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]


class FakeHost:
    """Host platform stand-in: directory lookups and message delivery."""

    def __init__(self, users: Optional[set[int]] = None) -> None:
        self.users = set(users or ())
        self.messages: list[tuple[int, str, str]] = []
        self.fail_sends = False

    def user_exists(self, user_id: int) -> bool:
        return user_id in self.users

    def send_message(self, recipient_id: int, subject: str, body: str) -> str:
        if self.fail_sends:
            raise RuntimeError("messaging unavailable")
        self.messages.append((recipient_id, subject, body))
        return f"msg-{len(self.messages)}"


class RecordingProvisioner:
    """Records after-commit provisioning calls instead of enqueuing tasks."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)

        def record(*args: Any) -> None:
            self.calls.append((name, args))

        record.__qualname__ = f"RecordingProvisioner.{name}"
        return record

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine() -> Generator[Any, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine: Any) -> Generator[Session, None, None]:
    session = Session(bind=engine, expire_on_commit=False, autoflush=False)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost(users={501, 502, 503, 504, 505})


@pytest.fixture
def provisioner() -> RecordingProvisioner:
    return RecordingProvisioner()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_plan(db: Session, name: str = "basic", **kwargs: Any) -> Plan:
    values = {
        "display_name": name.title(),
        "price_cents": 2900,
        "billing_cycle": "monthly",
        "default_seat_limit": 3,
        "stripe_price_id": f"price_{name}",
    }
    values.update(kwargs)
    plan = Plan(name=name, **values)
    db.add(plan)
    db.flush()
    return plan


def make_override(db: Session, buyer_id: int, plan: Plan, **kwargs: Any) -> PlanOverride:
    values = {"valid_from": datetime.utcnow() - timedelta(days=1)}
    values.update(kwargs)
    override = PlanOverride(buyer_id=buyer_id, plan_id=plan.id, **values)
    db.add(override)
    db.flush()
    return override


def make_cycle(
    db: Session,
    buyer_id: int,
    plan: Plan,
    status: str = ACTIVE,
    seat_limit: Optional[int] = None,
    subscription_id: Optional[str] = "sub_1",
    period_start: Optional[datetime] = None,
    days: int = 30,
    **kwargs: Any,
) -> BillingCycle:
    period_start = period_start or datetime.utcnow() - timedelta(days=1)
    cycle = BillingCycle(
        buyer_id=buyer_id,
        plan_id=plan.id,
        billed_price_cents=plan.price_cents,
        billed_seat_limit=plan.default_seat_limit if seat_limit is None else seat_limit,
        billing_cycle=plan.billing_cycle,
        status=status,
        stripe_subscription_id=subscription_id,
        stripe_customer_id="cus_1",
        stripe_price_id_used=plan.stripe_price_id,
        period_start=period_start,
        period_end=period_start + timedelta(days=days),
        **kwargs,
    )
    db.add(cycle)
    db.flush()
    return cycle


def make_seat(
    db: Session, cycle: BillingCycle, dependent_id: int, is_active: bool = True,
) -> Seat:
    seat = Seat(
        buyer_id=cycle.buyer_id,
        dependent_id=dependent_id,
        cycle_id=cycle.id,
        is_active=is_active,
    )
    db.add(seat)
    db.flush()
    return seat


def make_course(db: Session, course_id: int) -> ManagedCourse:
    course = ManagedCourse(course_id=course_id)
    db.add(course)
    db.flush()
    return course


def live_count(db: Session, buyer_id: int) -> int:
    return sum(
        1 for cycle in db.query(BillingCycle).filter(BillingCycle.buyer_id == buyer_id)
        if cycle.is_live
    )


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

def stripe_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def auth_headers(user_id: int, roles: Optional[list[str]] = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, roles=roles)}"}


def as_uuid(value: str) -> UUID:
    return UUID(value)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    db: Session,
    gateway: FakeGateway,
    host: FakeHost,
    provisioner: RecordingProvisioner,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client with dependency overrides.
    """

    def override_get_db() -> Generator[Session, None, None]:
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    app.dependency_overrides[get_webhook_gateway] = lambda: gateway
    app.dependency_overrides[get_host_client] = lambda: host
    app.dependency_overrides[get_provisioner] = lambda: provisioner

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as async_client:
        yield async_client

    app.dependency_overrides.clear()
