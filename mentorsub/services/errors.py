"""
Domain errors for billing, ledger and seat operations.

Capacity refusals are not errors: CapacityGuard returns a ``SeatResult``
with a reason code instead.
"""
from __future__ import annotations


class BillingError(Exception):
    """Base domain error with a stable machine-readable code."""

    def __init__(self, detail: str, code: str = "billing_error") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)


class InvalidEventError(BillingError):
    """Webhook payload is missing required fields or has the wrong shape."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="invalid_event")


class WebhookAuthenticationError(BillingError):
    """Stripe-Signature header missing, malformed or not matching the body."""

    def __init__(self, detail: str = "Invalid webhook signature.") -> None:
        super().__init__(detail, code="invalid_webhook_signature")


class NotFoundError(BillingError):
    """Referenced plan, cycle, seat or override does not exist."""

    def __init__(self, detail: str, code: str = "not_found") -> None:
        super().__init__(detail, code=code)


class PaymentProviderError(BillingError):
    """Stripe call failed (network, rate limit, API error). Safe to retry."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="payment_provider_error")


class ConsistencyError(BillingError):
    """A conditional state transition found the row in an unexpected state."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="consistency_error")


class StripeNotConfiguredError(BillingError):
    """Stripe credentials are not configured."""

    def __init__(
        self,
        detail: str = "Stripe is not configured. Set STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET.",
    ) -> None:
        super().__init__(detail, code="stripe_not_configured")
