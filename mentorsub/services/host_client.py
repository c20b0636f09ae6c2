"""
HostClient - HTTP client for the host learning platform.

Covers the host collaborators this service depends on: the user directory,
capability-scoped role assignment, course membership and user messaging.
All writes are idempotent on the host side; "already exists" and "already
gone" answers are treated as success.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from mentorsub.core.config import settings

logger = logging.getLogger(__name__)


class HostClientError(Exception):
    """Host platform call failed or answered unexpectedly."""


class HostClient:
    """Sync httpx client; one instance per task/request."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls) -> HostClient:
        return cls(
            base_url=settings.HOST_API_URL,
            token=settings.HOST_API_TOKEN,
            timeout=settings.HOST_API_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HostClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # User directory
    # ------------------------------------------------------------------

    def user_exists(self, user_id: int) -> bool:
        """True if the host knows an active (non-deleted) user with this id."""
        response = self._request("GET", f"/users/{user_id}", allow={404})
        if response.status_code == 404:
            return False
        return not response.json().get("deleted", False)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def grant_role(self, role: str, holder_id: int, context_user_id: int) -> None:
        """Assign ``role`` to ``holder_id`` in the user context of ``context_user_id``."""
        self._request(
            "PUT",
            f"/users/{context_user_id}/roles/{role}/holders/{holder_id}",
            allow={409},
        )
        logger.info(
            "host_role_granted: role=%s holder=%s context_user=%s",
            role, holder_id, context_user_id,
        )

    def revoke_role(self, role: str, holder_id: int, context_user_id: int) -> None:
        self._request(
            "DELETE",
            f"/users/{context_user_id}/roles/{role}/holders/{holder_id}",
            allow={404},
        )
        logger.info(
            "host_role_revoked: role=%s holder=%s context_user=%s",
            role, holder_id, context_user_id,
        )

    # ------------------------------------------------------------------
    # Course membership
    # ------------------------------------------------------------------

    def grant_membership(self, user_id: int, course_id: int, method: str) -> None:
        """Create (or reactivate) a membership owned by enrolment ``method``."""
        self._request(
            "PUT",
            f"/courses/{course_id}/members/{user_id}",
            json={"method": method},
            allow={409},
        )

    def revoke_membership(self, user_id: int, course_id: int, method: str) -> None:
        """Remove only the membership created by ``method``."""
        self._request(
            "DELETE",
            f"/courses/{course_id}/members/{user_id}",
            params={"method": method},
            allow={404},
        )

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send_message(self, recipient_id: int, subject: str, body: str) -> Optional[str]:
        """Deliver a notification; returns the host message id when given."""
        response = self._request(
            "POST",
            "/messages",
            json={"recipient_id": recipient_id, "subject": subject, "body": body},
        )
        message_id = response.json().get("id")
        return str(message_id) if message_id is not None else None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        allow: frozenset[int] | set[int] = frozenset(),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
            if response.status_code not in allow:
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise HostClientError(f"Timeout calling host: {method} {path}") from exc
        except httpx.HTTPStatusError as exc:
            raise HostClientError(
                f"HTTP {exc.response.status_code} from host: {method} {path}"
            ) from exc
        except httpx.RequestError as exc:
            raise HostClientError(f"Connection error calling host: {exc}") from exc
        return response
