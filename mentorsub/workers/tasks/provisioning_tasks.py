"""
Host provisioning tasks, enqueued after a ledger transaction commits.

Every host operation is idempotent, so retries are safe.
"""
from __future__ import annotations

import logging

from mentorsub.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="mentorsub.workers.tasks.provisioning_tasks.grant_buyer_access",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def grant_buyer_access(buyer_id: int) -> dict:
    """Enrol the buyer in every managed course."""
    from mentorsub.core.database_sync import get_sync_db
    from mentorsub.services.host_client import HostClient
    from mentorsub.services.provisioning_service import ProvisioningService

    with HostClient.from_settings() as host, get_sync_db() as db:
        courses = ProvisioningService(db, host).grant_buyer_access(buyer_id)
    return {"status": "granted", "buyer_id": buyer_id, "courses": courses}


@celery_app.task(
    name="mentorsub.workers.tasks.provisioning_tasks.revoke_buyer_access",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def revoke_buyer_access(buyer_id: int) -> dict:
    """Remove the buyer's subscription-owned course memberships."""
    from mentorsub.core.database_sync import get_sync_db
    from mentorsub.services.host_client import HostClient
    from mentorsub.services.provisioning_service import ProvisioningService

    with HostClient.from_settings() as host, get_sync_db() as db:
        courses = ProvisioningService(db, host).revoke_buyer_access(buyer_id)
    return {"status": "revoked", "buyer_id": buyer_id, "courses": courses}


@celery_app.task(
    name="mentorsub.workers.tasks.provisioning_tasks.grant_seat_access",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def grant_seat_access(buyer_id: int, dependent_id: int) -> dict:
    """Parent role for the buyer, then course memberships for the mentee."""
    from mentorsub.core.database_sync import get_sync_db
    from mentorsub.services.host_client import HostClient
    from mentorsub.services.provisioning_service import ProvisioningService

    with HostClient.from_settings() as host, get_sync_db() as db:
        courses = ProvisioningService(db, host).grant_seat_access(buyer_id, dependent_id)
    return {"status": "granted", "buyer_id": buyer_id, "dependent_id": dependent_id, "courses": courses}


@celery_app.task(
    name="mentorsub.workers.tasks.provisioning_tasks.revoke_seat_access",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def revoke_seat_access(buyer_id: int, dependent_id: int) -> dict:
    from mentorsub.core.database_sync import get_sync_db
    from mentorsub.services.host_client import HostClient
    from mentorsub.services.provisioning_service import ProvisioningService

    with HostClient.from_settings() as host, get_sync_db() as db:
        courses = ProvisioningService(db, host).revoke_seat_access(buyer_id, dependent_id)
    return {"status": "revoked", "buyer_id": buyer_id, "dependent_id": dependent_id, "courses": courses}


@celery_app.task(
    name="mentorsub.workers.tasks.provisioning_tasks.send_notification",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_notification(recipient_id: int, subject: str, body: str) -> dict:
    """Deliver a host message; no database access needed."""
    from mentorsub.services.host_client import HostClient

    with HostClient.from_settings() as host:
        message_id = host.send_message(recipient_id, subject, body)
    logger.info("send_notification: recipient=%s message_id=%s", recipient_id, message_id)
    return {"status": "sent", "recipient_id": recipient_id, "message_id": message_id}
