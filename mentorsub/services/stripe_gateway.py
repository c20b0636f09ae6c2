"""
StripeGateway - the Stripe calls the billing flows need, and nothing more.

Every Stripe failure surfaces as ``PaymentProviderError``; callers decide
whether to retry (Reconciler) or report (admin actions).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional

import stripe

from mentorsub.core.config import settings
from mentorsub.services.errors import PaymentProviderError, StripeNotConfiguredError

logger = logging.getLogger(__name__)


def from_stripe_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds from Stripe -> naive UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), UTC).replace(tzinfo=None)


def stripe_object_to_dict(obj: Any) -> dict[str, Any]:
    """Plain-dict view of a StripeObject (or pass-through for dicts)."""
    if type(obj) is dict:
        return obj
    return json.loads(str(obj))


@dataclass(frozen=True)
class ProcessorSubscription:
    """The subset of a Stripe Subscription the ledger cares about."""

    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    item_id: Optional[str] = None
    price_id: Optional[str] = None

    @classmethod
    def from_stripe(cls, data: dict[str, Any]) -> ProcessorSubscription:
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        # Newer API versions only expose the period on subscription items
        period_start = data.get("current_period_start") or first_item.get("current_period_start")
        period_end = data.get("current_period_end") or first_item.get("current_period_end")
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            customer_id=customer,
            current_period_start=from_stripe_timestamp(period_start),
            current_period_end=from_stripe_timestamp(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            item_id=first_item.get("id"),
            price_id=(first_item.get("price") or {}).get("id"),
        )


class StripeGateway:
    """
    Thin wrapper over the stripe SDK module.

    Use ``from_settings`` to build one from environment configuration.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str = "",
        publishable_key: str = "",
    ) -> None:
        self._secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key

    @classmethod
    def from_settings(cls) -> StripeGateway:
        """
        Raises:
            StripeNotConfiguredError: If no secret key is configured.
        """
        if not settings.STRIPE_SECRET_KEY:
            raise StripeNotConfiguredError()
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
        )

    def _configure_stripe(self) -> None:
        """Set stripe.api_key before each operation."""
        stripe.api_key = self._secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        self._configure_stripe()
        try:
            obj = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                f"Could not retrieve subscription {subscription_id}: {exc}"
            ) from exc
        return ProcessorSubscription.from_stripe(stripe_object_to_dict(obj))

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel immediately."""
        self._configure_stripe()
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                f"Could not cancel subscription {subscription_id}: {exc}"
            ) from exc
        logger.info("stripe_subscription_cancelled: sub=%s", subscription_id)

    def cancel_at_period_end(self, subscription_id: str) -> None:
        self._modify(subscription_id, cancel_at_period_end=True)
        logger.info("stripe_subscription_cancel_scheduled: sub=%s", subscription_id)

    def pause_subscription(self, subscription_id: str) -> None:
        self._modify(subscription_id, pause_collection={"behavior": "void"})
        logger.info("stripe_subscription_paused: sub=%s", subscription_id)

    def resume_subscription(self, subscription_id: str) -> None:
        # Empty string unsets pause_collection
        self._modify(subscription_id, pause_collection="")
        logger.info("stripe_subscription_resumed: sub=%s", subscription_id)

    def change_price(self, subscription_id: str, price_id: str) -> None:
        """Swap the subscription's single item to ``price_id`` with proration."""
        current = self.retrieve_subscription(subscription_id)
        if not current.item_id:
            raise PaymentProviderError(
                f"Subscription {subscription_id} has no items to update."
            )
        self._modify(
            subscription_id,
            items=[{"id": current.item_id, "price": price_id}],
            proration_behavior="create_prorations",
        )
        logger.info("stripe_subscription_price_changed: sub=%s price=%s", subscription_id, price_id)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Create a subscription-mode Checkout Session.

        Returns:
            dict with checkout_url and session_id.
        """
        self._configure_stripe()
        customer_kwarg: dict[str, Any] = {}
        if customer_id:
            customer_kwarg["customer"] = customer_id
        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                **customer_kwarg,
            )
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Could not create checkout session: {exc}") from exc
        return {"checkout_url": session.url, "session_id": session.id}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _modify(self, subscription_id: str, **params: Any) -> None:
        self._configure_stripe()
        try:
            stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                f"Could not update subscription {subscription_id}: {exc}"
            ) from exc
