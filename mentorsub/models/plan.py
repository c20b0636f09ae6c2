"""
Plan model - sellable subscription tiers with Stripe integration.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import relationship

from mentorsub.core.database import Base


class Plan(Base):
    """
    Subscription plan definition with pricing and the default seat limit.

    Cycles snapshot price/limit at creation, so edits here only affect
    future cycles.
    """

    __tablename__ = "plans"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    name = Column(String(50), unique=True, nullable=False, comment="slug: basic, pro, annual")
    display_name = Column(String(100), nullable=False)

    # Stripe integration
    stripe_price_id = Column(String(255), nullable=True)

    # Pricing
    price_cents = Column(Integer, nullable=False, default=0, comment="Price per cycle in cents")
    billing_cycle = Column(
        String(20),
        nullable=False,
        default="monthly",
        comment="monthly|annual",
    )

    # Seat limits
    default_seat_limit = Column(Integer, nullable=False, default=1, comment="Mentees included")

    # Status / ordering
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    overrides = relationship("PlanOverride", back_populates="plan")
    cycles = relationship("BillingCycle", back_populates="plan")

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name='{self.name}', price={self.price_cents})>"
