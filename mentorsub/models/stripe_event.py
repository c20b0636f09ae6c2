"""
StripeEvent model - log of every webhook event received from Stripe.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, String, Text, Uuid

from mentorsub.core.database import Base


class StripeEvent(Base):
    """
    Tracks every Stripe webhook event received (processed, ignored, failed).

    A row in ``processed`` or ``ignored`` state also marks the event id as
    handled, so a redelivery of the same event is acknowledged without
    running handlers again.
    """

    __tablename__ = "stripe_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="evt_xxx from Stripe",
    )
    event_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="checkout.session.completed|invoice.paid|etc",
    )
    status = Column(
        String(20),
        nullable=False,
        index=True,
        comment="processed|failed|ignored",
    )
    customer_id = Column(String(255), nullable=True, comment="cus_xxx from Stripe")
    subscription_id = Column(String(255), nullable=True, comment="sub_xxx from Stripe")
    buyer_id = Column(BigInteger, nullable=True, index=True)
    attempts = Column(BigInteger, nullable=False, default=1)
    error_message = Column(Text, nullable=True)
    payload_summary = Column(String(500), nullable=True, comment="str(data)[:500]")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<StripeEvent(id={self.id}, event_type='{self.event_type}', "
            f"status='{self.status}')>"
        )
