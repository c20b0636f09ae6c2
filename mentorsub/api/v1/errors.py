"""
Mapping of billing domain errors to HTTP errors.
"""
from fastapi import HTTPException, status

from mentorsub.services.errors import (
    BillingError,
    ConsistencyError,
    NotFoundError,
    PaymentProviderError,
)
from mentorsub.services.host_client import HostClientError


def http_error(exc: Exception) -> HTTPException:
    """HTTPException for a BillingError or HostClientError."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConsistencyError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (PaymentProviderError, HostClientError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    detail = exc.detail if isinstance(exc, BillingError) else str(exc)
    return HTTPException(status_code=code, detail=detail)
