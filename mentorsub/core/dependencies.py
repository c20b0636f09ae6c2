"""
FastAPI dependencies for auth, the acting principal and external collaborators.
"""
from collections.abc import Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mentorsub.core.security import Principal, decode_token, principal_from_payload
from mentorsub.services.errors import StripeNotConfiguredError
from mentorsub.services.host_client import HostClient
from mentorsub.services.provisioning_service import TaskProvisioner
from mentorsub.services.stripe_gateway import StripeGateway

# Bearer token issued by the host platform
security = HTTPBearer()


def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """
    Dependency to get the current authenticated principal.

    Raises:
        HTTPException: If token is invalid or malformed
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    principal = principal_from_payload(payload)
    if principal is None:
        raise credentials_exception
    return principal


def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Dependency that only lets host administrators through."""
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions: billing administration",
        )
    return principal


# ------------------------------------------------------------------
# Collaborators (overridden in tests)
# ------------------------------------------------------------------

def get_stripe_gateway() -> StripeGateway:
    """Stripe gateway for user/admin routes; 400 when not configured."""
    try:
        return StripeGateway.from_settings()
    except StripeNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.detail,
        ) from exc


def get_webhook_gateway() -> StripeGateway:
    """Stripe gateway for the webhook; 503 so Stripe retries once configured."""
    try:
        return StripeGateway.from_settings()
    except StripeNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.detail,
        ) from exc


def get_host_client() -> Generator[HostClient, None, None]:
    client = HostClient.from_settings()
    try:
        yield client
    finally:
        client.close()


def get_provisioner() -> TaskProvisioner:
    return TaskProvisioner()
