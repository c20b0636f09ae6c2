"""
BillingCycle model - one immutable ledger row per billing period.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship

from mentorsub.core.database import Base

ACTIVE = "active"
PAST_DUE = "past_due"
PAUSED = "paused"
SUPERSEDED = "superseded"
CANCELLED = "cancelled"
EXPIRED = "expired"

LIVE_STATUSES = (ACTIVE, PAST_DUE, PAUSED)
TERMINAL_STATUSES = (SUPERSEDED, CANCELLED, EXPIRED)

_LIVE_SQL = text("status IN ('active', 'past_due', 'paused')")
_INITIAL_SQL = text("stripe_invoice_id IS NULL")


class BillingCycle(Base):
    """
    Ledger row for a single billing cycle of a mentor subscription.

    Price, seat limit and billing cycle are snapshots taken at creation and
    never change. Only status, cancel_at_period_end, cancelled_at and
    updated_at move afterwards. Rows are never deleted.
    """

    __tablename__ = "billing_cycles"
    __table_args__ = (
        Index("ix_billing_cycles_buyer_status", "buyer_id", "status"),
        # At most one live cycle per buyer
        Index(
            "uq_billing_cycles_live_buyer",
            "buyer_id",
            unique=True,
            postgresql_where=_LIVE_SQL,
            sqlite_where=_LIVE_SQL,
        ),
        # At most one checkout-created cycle per Stripe subscription
        Index(
            "uq_billing_cycles_initial_subscription",
            "stripe_subscription_id",
            unique=True,
            postgresql_where=_INITIAL_SQL,
            sqlite_where=_INITIAL_SQL,
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    buyer_id = Column(BigInteger, nullable=False, comment="Host user id of the mentor")
    plan_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    override_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("plan_overrides.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Snapshots
    billed_price_cents = Column(Integer, nullable=False)
    billed_seat_limit = Column(Integer, nullable=False)
    billing_cycle = Column(String(20), nullable=False, comment="monthly|annual")

    status = Column(
        String(20),
        nullable=False,
        default=ACTIVE,
        comment="active|past_due|paused|superseded|cancelled|expired",
    )

    # Stripe IDs
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_invoice_id = Column(String(255), nullable=True, unique=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_price_id_used = Column(String(255), nullable=True)

    # Billing period
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    plan = relationship("Plan", back_populates="cycles")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<BillingCycle(id={self.id}, buyer_id={self.buyer_id}, "
            f"status='{self.status}')>"
        )
