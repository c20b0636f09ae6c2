"""
PlanOverride model - time-windowed per-buyer exceptions to plan defaults.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship

from mentorsub.core.database import Base


class PlanOverride(Base):
    """
    Per-buyer override for one plan.

    A NULL override field means "inherit the plan default", never zero.
    ``valid_until`` NULL means open-ended.
    """

    __tablename__ = "plan_overrides"
    __table_args__ = (
        Index("ix_plan_overrides_buyer_plan", "buyer_id", "plan_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    buyer_id = Column(BigInteger, nullable=False, comment="Host user id of the mentor")
    plan_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
    )

    price_override_cents = Column(Integer, nullable=True)
    seat_limit_override = Column(Integer, nullable=True)
    stripe_price_id_override = Column(String(255), nullable=True)

    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=True)

    admin_notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    plan = relationship("Plan", back_populates="overrides")

    def __repr__(self) -> str:
        return (
            f"<PlanOverride(id={self.id}, buyer_id={self.buyer_id}, "
            f"plan_id={self.plan_id})>"
        )
