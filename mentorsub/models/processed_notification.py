"""
ProcessedNotification model - dedup record for reminders already sent.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid

from mentorsub.core.database import Base


class ProcessedNotification(Base):
    """
    Existence of (cycle_id, notification_type, threshold) means "never resend".
    """

    __tablename__ = "processed_notifications"
    __table_args__ = (
        UniqueConstraint(
            "cycle_id",
            "notification_type",
            "threshold",
            name="uq_processed_notifications_key",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    cycle_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_cycles.id", ondelete="CASCADE"),
        nullable=False,
    )
    notification_type = Column(String(50), nullable=False, comment="expiry")
    threshold = Column(Integer, nullable=False, comment="Days before period_end")
    message_id = Column(String(255), nullable=True, comment="Id returned by the host messaging API")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ProcessedNotification(cycle_id={self.cycle_id}, "
            f"type='{self.notification_type}', threshold={self.threshold})>"
        )
