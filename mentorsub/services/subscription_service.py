"""
Subscription service - Stripe checkout and webhook event processing.

Every webhook is verified, deduplicated by Stripe event id against the
``stripe_events`` log, and dispatched to a handler that only performs
conditional, re-derivable changes. Redelivery, reordering and concurrent
duplicates therefore cannot corrupt the ledger.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional
from uuid import UUID

import stripe
from sqlalchemy import select
from sqlalchemy.orm import Session

from mentorsub.core.config import settings
from mentorsub.models.billing_cycle import ACTIVE, PAST_DUE
from mentorsub.models.plan import Plan
from mentorsub.models.stripe_event import StripeEvent
from mentorsub.services.errors import (
    BillingError,
    ConsistencyError,
    InvalidEventError,
    NotFoundError,
    StripeNotConfiguredError,
    WebhookAuthenticationError,
)
from mentorsub.services.ledger_service import Ledger, NewCycle
from mentorsub.services.pricing_service import PricingResolver
from mentorsub.services.stripe_gateway import StripeGateway, from_stripe_timestamp

logger = logging.getLogger(__name__)

HANDLED_STATUSES = ("processed", "ignored")


class EventProcessor:
    """
    Handles Stripe webhooks and checkout creation.

    ``gateway`` provides the Stripe API calls; ``provisioner`` is passed on
    to the Ledger for after-commit host effects.
    """

    def __init__(
        self,
        db: Session,
        gateway: Any,
        *,
        webhook_secret: str = "",
        provisioner: Any = None,
        tolerance: Optional[int] = None,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance or settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        self._ledger = Ledger(db, provisioner=provisioner, gateway=gateway)
        self._pricing = PricingResolver(db)

    # ------------------------------------------------------------------
    # Factory methods
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(cls, db: Session, provisioner: Any = None) -> EventProcessor:
        """
        Raises:
            StripeNotConfiguredError: If Stripe credentials are missing.
        """
        gateway = StripeGateway.from_settings()
        return cls(
            db,
            gateway,
            webhook_secret=gateway.webhook_secret,
            provisioner=provisioner,
        )

    def _require_webhook_secret(self) -> None:
        """Raise if webhook_secret is empty; checked before any webhook work."""
        if not self._webhook_secret:
            raise StripeNotConfiguredError(
                "Stripe webhook secret is not configured. Set STRIPE_WEBHOOK_SECRET."
            )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        buyer_id: int,
        plan_id: UUID,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, str]:
        """
        Create a Stripe Checkout Session for ``plan_id`` at the buyer's price.

        Returns:
            dict with checkout_url and session_id.
        """
        plan = self._db.get(Plan, plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError("Plan not found or inactive.", code="plan_not_found")

        current = self._ledger.live_of(buyer_id)
        if current is not None:
            raise BillingError(
                "Buyer already has a live subscription.",
                code="subscription_exists",
            )

        pricing = self._pricing.resolve(buyer_id, plan_id)
        if not pricing.stripe_price_id:
            raise BillingError(
                "Plan has no Stripe price configured.",
                code="plan_no_stripe_price",
            )

        latest = self._ledger.latest_of(buyer_id)
        session = self._gateway.create_checkout_session(
            price_id=pricing.stripe_price_id,
            metadata={"buyer_id": str(buyer_id), "plan_id": str(plan_id)},
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=latest.stripe_customer_id if latest else None,
        )
        logger.info(
            "checkout_session_created: buyer=%s plan=%s session=%s",
            buyer_id, plan_id, session["session_id"],
        )
        return session

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------

    def handle_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> str:
        """
        Verify and dispatch a Stripe webhook event.

        Returns:
            Event type string for logging.

        Raises:
            StripeNotConfiguredError: No webhook secret configured.
            WebhookAuthenticationError: Signature or payload invalid.
        """
        self._require_webhook_secret()
        event = self.verify_event(payload, sig_header)
        return self.process_event(event)

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> dict[str, Any]:
        """Check the Stripe-Signature header and parse the body."""
        if not sig_header:
            raise WebhookAuthenticationError("Missing Stripe-Signature header.")
        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(
                body, sig_header, self._webhook_secret, self._tolerance,
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook_signature_invalid: %s", exc)
            raise WebhookAuthenticationError() from exc
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("webhook_payload_invalid: %s", exc)
            raise WebhookAuthenticationError("Malformed webhook payload.") from exc

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookAuthenticationError("Malformed webhook payload.")
        return event

    def process_event(self, event: dict[str, Any]) -> str:
        """Deduplicate and dispatch an already-verified event."""
        event_id = event["id"]
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}

        previous = self._find_event(event_id)
        if previous is not None and previous.status in HANDLED_STATUSES:
            logger.info("webhook_duplicate: event=%s type=%s", event_id, event_type)
            return event_type

        handler = {
            "checkout.session.completed": self._handle_checkout_completed,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }.get(event_type)

        if handler is None:
            self._log_event(previous, event_id=event_id, event_type=event_type, status="ignored", data=data)
            logger.debug("webhook_ignored: event=%s type=%s", event_id, event_type)
            return event_type

        try:
            with self._db.begin_nested():
                handler(data)
        except InvalidEventError as exc:
            # Bad shape is a no-op, not a failure
            logger.warning("webhook_invalid_event: event=%s type=%s %s", event_id, event_type, exc.detail)
            self._log_event(
                previous, event_id=event_id, event_type=event_type,
                status="ignored", data=data, error_message=exc.detail,
            )
            return event_type
        except Exception as exc:
            self._log_event(
                previous, event_id=event_id, event_type=event_type,
                status="failed", data=data, error_message=str(exc)[:500],
            )
            raise

        self._log_event(previous, event_id=event_id, event_type=event_type, status="processed", data=data)
        logger.info("webhook_processed: event=%s type=%s", event_id, event_type)
        return event_type

    # ------------------------------------------------------------------
    # Internal webhook handlers
    # ------------------------------------------------------------------

    def _handle_checkout_completed(self, data: dict[str, Any]) -> None:
        """checkout.session.completed - create the buyer's first cycle."""
        metadata = data.get("metadata") or {}
        buyer_id = _parse_int(metadata.get("buyer_id"))
        plan_id = _parse_uuid(metadata.get("plan_id"))
        if buyer_id is None or plan_id is None:
            raise InvalidEventError("checkout.session.completed without buyer_id/plan_id metadata")

        subscription_id = data.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            raise InvalidEventError("checkout.session.completed without a subscription id")

        if self._ledger.has_subscription(subscription_id):
            logger.info("checkout_already_recorded: sub=%s", subscription_id)
            return

        remote = self._gateway.retrieve_subscription(subscription_id)
        if remote.current_period_start is None or remote.current_period_end is None:
            raise InvalidEventError(f"Subscription {subscription_id} has no billing period")

        pricing = self._pricing.resolve(buyer_id, plan_id, as_of=remote.current_period_start)
        customer_id = data.get("customer") or remote.customer_id
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        self._ledger.create_cycle(
            NewCycle.from_pricing(
                buyer_id,
                pricing,
                period_start=remote.current_period_start,
                period_end=remote.current_period_end,
                stripe_subscription_id=subscription_id,
                stripe_customer_id=customer_id,
                stripe_price_id_used=remote.price_id,
            )
        )

    def _handle_invoice_paid(self, data: dict[str, Any]) -> None:
        """invoice.paid - renew the live cycle for a recurring invoice."""
        invoice_id = data.get("id")
        if not invoice_id:
            raise InvalidEventError("invoice.paid without an invoice id")

        if self._ledger.find_by_invoice(invoice_id) is not None:
            logger.info("invoice_already_recorded: invoice=%s", invoice_id)
            return

        if data.get("billing_reason") == "subscription_create":
            logger.debug("invoice_initial_skipped: invoice=%s", invoice_id)
            return

        subscription_id = _invoice_subscription_id(data)
        if not subscription_id:
            logger.debug("invoice_without_subscription: invoice=%s", invoice_id)
            return

        previous = self._ledger.by_subscription(subscription_id, (ACTIVE, PAST_DUE))
        if previous is None:
            logger.info("invoice_no_live_cycle: invoice=%s sub=%s", invoice_id, subscription_id)
            return

        period_start, period_end, price_id = _invoice_period(data)
        if period_start is None or period_end is None:
            raise InvalidEventError(f"Invoice {invoice_id} has no line item period")
        if period_end <= previous.period_start:
            logger.info(
                "invoice_stale_period: invoice=%s cycle=%s", invoice_id, previous.id,
            )
            return

        pricing = self._pricing.resolve(previous.buyer_id, previous.plan_id, as_of=period_start)
        payment_intent = data.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        self._ledger.renew(
            previous.id,
            NewCycle.from_pricing(
                previous.buyer_id,
                pricing,
                period_start=period_start,
                period_end=period_end,
                stripe_subscription_id=subscription_id,
                stripe_customer_id=data.get("customer") or previous.stripe_customer_id,
                stripe_invoice_id=invoice_id,
                stripe_payment_intent_id=payment_intent,
                stripe_price_id_used=price_id,
            ),
        )

    def _handle_payment_failed(self, data: dict[str, Any]) -> None:
        """invoice.payment_failed - active cycle becomes past_due."""
        subscription_id = _invoice_subscription_id(data)
        if not subscription_id:
            return

        cycle = self._ledger.by_subscription(subscription_id)
        if cycle is None:
            logger.info("payment_failed_no_live_cycle: sub=%s", subscription_id)
            return
        self._ledger.mark_past_due(cycle.id)

    def _handle_subscription_deleted(self, data: dict[str, Any]) -> None:
        """customer.subscription.deleted - expire the live cycle, if any."""
        subscription_id = data.get("id")
        if not subscription_id:
            raise InvalidEventError("customer.subscription.deleted without an id")

        cycle = self._ledger.by_subscription(subscription_id)
        if cycle is None:
            logger.info("subscription_deleted_no_live_cycle: sub=%s", subscription_id)
            return
        try:
            self._ledger.expire(cycle.id)
        except ConsistencyError:
            # Cancelled or expired concurrently; nothing left to do
            logger.info("subscription_deleted_raced: sub=%s cycle=%s", subscription_id, cycle.id)

    # ------------------------------------------------------------------
    # Event logging
    # ------------------------------------------------------------------

    def _find_event(self, event_id: str) -> Optional[StripeEvent]:
        stmt = select(StripeEvent).where(StripeEvent.event_id == event_id)
        return self._db.execute(stmt).scalar_one_or_none()

    def _log_event(
        self,
        previous: Optional[StripeEvent],
        *,
        event_id: str,
        event_type: str,
        status: str,
        data: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Persist (or update, on redelivery of a failed event) the StripeEvent row."""
        data = data or {}
        if previous is not None:
            previous.status = status
            previous.attempts = (previous.attempts or 0) + 1
            previous.error_message = error_message
            self._db.flush()
            return

        subscription_id = data.get("subscription") or _invoice_subscription_id(data)
        if not subscription_id and str(data.get("id", "")).startswith("sub_"):
            subscription_id = data["id"]
        customer_id = data.get("customer")
        record = StripeEvent(
            event_id=event_id,
            event_type=event_type,
            status=status,
            customer_id=customer_id if isinstance(customer_id, str) else None,
            subscription_id=subscription_id if isinstance(subscription_id, str) else None,
            buyer_id=_parse_int((data.get("metadata") or {}).get("buyer_id")),
            error_message=error_message,
            payload_summary=str(data)[:500] if data else None,
        )
        self._db.add(record)
        self._db.flush()


# ------------------------------------------------------------------
# Payload helpers
# ------------------------------------------------------------------

def _parse_int(raw: Any) -> Optional[int]:
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _parse_uuid(raw: Any) -> Optional[UUID]:
    try:
        return UUID(str(raw)) if raw else None
    except ValueError:
        return None


def _invoice_subscription_id(data: dict[str, Any]) -> Optional[str]:
    """Subscription id of an invoice across Stripe API versions."""
    subscription = data.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    details = ((data.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def _invoice_period(data: dict[str, Any]) -> tuple[Any, Any, Optional[str]]:
    """(period_start, period_end, price_id) from the first subscription line item."""
    lines = (data.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("start") and period.get("end"):
            price = line.get("price") or {}
            price_id = price.get("id") if isinstance(price, dict) else None
            if price_id is None:
                pricing = (line.get("pricing") or {}).get("price_details") or {}
                price_id = pricing.get("price")
            return (
                from_stripe_timestamp(period["start"]),
                from_stripe_timestamp(period["end"]),
                price_id,
            )
    return None, None, None
