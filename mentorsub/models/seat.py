"""
Seat model - a mentee sponsored by a mentor's subscription.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Uuid

from mentorsub.core.database import Base


class Seat(Base):
    """
    Mentor-mentee relationship.

    ``dependent_id`` is unique system-wide: a mentee belongs to at most one
    mentor. Expiry deactivates seats but never deletes them.
    """

    __tablename__ = "seats"
    __table_args__ = (
        Index("ix_seats_buyer_active", "buyer_id", "is_active"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    buyer_id = Column(BigInteger, nullable=False, comment="Host user id of the mentor")
    dependent_id = Column(
        BigInteger, nullable=False, unique=True, comment="Host user id of the mentee"
    )
    cycle_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_cycles.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Cycle that last authorized the seat",
    )
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Seat(buyer_id={self.buyer_id}, dependent_id={self.dependent_id}, "
            f"active={self.is_active})>"
        )
