"""
Provisioning - host-side access that follows the ledger.

``ProvisioningService`` performs the host calls (roles, course membership,
messages) and runs inside Celery workers. ``TaskProvisioner`` has the same
surface but only enqueues the corresponding tasks; services hand it to
``after_commit`` so host calls never happen inside a local transaction.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mentorsub.core.config import settings
from mentorsub.models.managed_course import ManagedCourse
from mentorsub.services.host_client import HostClient

logger = logging.getLogger(__name__)


class ProvisioningService:
    """Grants and revokes host access for buyers and their seats."""

    def __init__(self, db: Session, host: HostClient) -> None:
        self._db = db
        self._host = host
        self._method = settings.ENROLMENT_METHOD
        self._parent_role = settings.PARENT_ROLE_SHORTNAME

    def managed_course_ids(self) -> list[int]:
        stmt = select(ManagedCourse.course_id).order_by(
            ManagedCourse.sort_order, ManagedCourse.course_id,
        )
        return list(self._db.execute(stmt).scalars().all())

    def grant_buyer_access(self, buyer_id: int) -> int:
        """Enrol the buyer in every managed course. Returns courses touched."""
        course_ids = self.managed_course_ids()
        for course_id in course_ids:
            self._host.grant_membership(buyer_id, course_id, self._method)
        logger.info("buyer_access_granted: buyer=%s courses=%d", buyer_id, len(course_ids))
        return len(course_ids)

    def revoke_buyer_access(self, buyer_id: int) -> int:
        course_ids = self.managed_course_ids()
        for course_id in course_ids:
            self._host.revoke_membership(buyer_id, course_id, self._method)
        logger.info("buyer_access_revoked: buyer=%s courses=%d", buyer_id, len(course_ids))
        return len(course_ids)

    def grant_seat_access(self, buyer_id: int, dependent_id: int) -> int:
        """Parent role for the buyer over the dependent, then course memberships."""
        self._host.grant_role(self._parent_role, buyer_id, dependent_id)
        course_ids = self.managed_course_ids()
        for course_id in course_ids:
            self._host.grant_membership(dependent_id, course_id, self._method)
        logger.info(
            "seat_access_granted: buyer=%s dependent=%s courses=%d",
            buyer_id, dependent_id, len(course_ids),
        )
        return len(course_ids)

    def revoke_seat_access(self, buyer_id: int, dependent_id: int) -> int:
        self._host.revoke_role(self._parent_role, buyer_id, dependent_id)
        course_ids = self.managed_course_ids()
        for course_id in course_ids:
            self._host.revoke_membership(dependent_id, course_id, self._method)
        logger.info(
            "seat_access_revoked: buyer=%s dependent=%s courses=%d",
            buyer_id, dependent_id, len(course_ids),
        )
        return len(course_ids)

    def send_notification(self, recipient_id: int, subject: str, body: str) -> Optional[str]:
        message_id = self._host.send_message(recipient_id, subject, body)
        logger.info(
            "notification_sent: recipient=%s subject=%r message_id=%s",
            recipient_id, subject, message_id,
        )
        return message_id


class TaskProvisioner:
    """Enqueues provisioning tasks; meant to be called after commit."""

    def grant_buyer_access(self, buyer_id: int) -> None:
        from mentorsub.workers.tasks.provisioning_tasks import grant_buyer_access

        grant_buyer_access.delay(buyer_id)

    def revoke_buyer_access(self, buyer_id: int) -> None:
        from mentorsub.workers.tasks.provisioning_tasks import revoke_buyer_access

        revoke_buyer_access.delay(buyer_id)

    def grant_seat_access(self, buyer_id: int, dependent_id: int) -> None:
        from mentorsub.workers.tasks.provisioning_tasks import grant_seat_access

        grant_seat_access.delay(buyer_id, dependent_id)

    def revoke_seat_access(self, buyer_id: int, dependent_id: int) -> None:
        from mentorsub.workers.tasks.provisioning_tasks import revoke_seat_access

        revoke_seat_access.delay(buyer_id, dependent_id)

    def send_notification(self, recipient_id: int, subject: str, body: str) -> None:
        from mentorsub.workers.tasks.provisioning_tasks import send_notification

        send_notification.delay(recipient_id, subject, body)
