"""
ManagedCourse model - host courses whose membership this service controls.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, Integer, Uuid

from mentorsub.core.database import Base


class ManagedCourse(Base):
    """Course included in the mentor subscription."""

    __tablename__ = "managed_courses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    course_id = Column(BigInteger, nullable=False, unique=True, comment="Host course id")
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<ManagedCourse(course_id={self.course_id})>"
