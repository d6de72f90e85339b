"""Billing events from Stripe mapped onto entitlement transitions.

The adapter only ever sets state: checkout grants DEEP for one or twelve
months from now, subscription updates set DEEP until the provider's own
period end (or FREE when the subscription is no longer active), and
cancellation sets FREE. Events that do not name an account are logged and
dropped; the account is never inferred from other fields such as email.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import stripe
from sqlalchemy.orm import Session

from dreamdiary.config import Settings
from dreamdiary.metrics import billing_events_total
from dreamdiary.models import User
from dreamdiary.services.entitlements import (
    BillingActivation,
    BillingDeactivation,
    add_months,
    apply_intent,
)

settings = Settings()
logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})
BILLING_PERIOD_MONTHS = {"monthly": 1, "yearly": 12}

_stripe_client: stripe.StripeClient | None = None


class BillingEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout-completed"
    SUBSCRIPTION_UPDATED = "subscription-updated"
    SUBSCRIPTION_CANCELED = "subscription-canceled"


@dataclass(frozen=True)
class BillingEvent:
    kind: BillingEventKind
    account_ref: str | None
    billing_period: str | None = None
    period_end: datetime | None = None
    status: str | None = None


class BillingNotConfigured(RuntimeError):
    pass


def _get_stripe() -> stripe.StripeClient:
    """Lazily build and cache the Stripe client."""
    global _stripe_client
    if _stripe_client is None:
        if not settings.stripe_secret_key:
            raise BillingNotConfigured("STRIPE_SECRET_KEY is not configured")
        _stripe_client = stripe.StripeClient(settings.stripe_secret_key)
    return _stripe_client


def price_for(billing_period: str) -> str:
    if billing_period == "yearly":
        return settings.stripe_price_deep_yearly
    return settings.stripe_price_deep_monthly


def create_checkout_session(
    *, account_id: int, email: str, billing_period: str, origin: str
) -> tuple[str, str | None]:
    """Create a subscription checkout; returns ``(session_id, url)``."""
    price_id = price_for(billing_period)
    if not price_id:
        raise BillingNotConfigured(
            f"Stripe price not configured for {billing_period} plan"
        )
    metadata = {"userId": str(account_id), "billingPeriod": billing_period}
    session = _get_stripe().checkout.sessions.create(
        params={
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "customer_email": email,
            "client_reference_id": str(account_id),
            "success_url": f"{origin}/settings?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/settings?canceled=true",
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
    )
    return session.id, session.url


def verify_webhook(payload: bytes, sig_header: str | None) -> dict[str, Any]:
    """Check the ``Stripe-Signature`` header over the raw body.

    Raises ``stripe.SignatureVerificationError`` on a bad or missing
    signature and ``ValueError`` on a body that is not a JSON object.
    """
    if not settings.stripe_webhook_secret:
        raise BillingNotConfigured("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise stripe.SignatureVerificationError(
            "Missing Stripe-Signature header", sig_header, payload
        )
    body = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(
        body,
        sig_header,
        settings.stripe_webhook_secret,
        settings.stripe_webhook_tolerance_s,
    )
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return data


def _from_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _subscription_period_end(obj: dict[str, Any]) -> datetime | None:
    period_end = _from_timestamp(obj.get("current_period_end"))
    if period_end is not None:
        return period_end
    # newer API versions carry the period on the subscription items
    items = obj.get("items")
    items = items.get("data") if isinstance(items, dict) else None
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return _from_timestamp(items[0].get("current_period_end"))
    return None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def event_from_stripe(event: dict[str, Any]) -> BillingEvent | None:
    """Translate a verified Stripe event; ``None`` for types we only log."""
    event_type = _text(event.get("type"))
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        logger.warning("audit: stripe event %s dropped: no data object", event_type)
        return None
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        logger.warning("audit: stripe event %s dropped: malformed metadata", event_type)
        return None

    if event_type == "checkout.session.completed":
        billing_period = _text(metadata.get("billingPeriod")) or "monthly"
        amount_total = obj.get("amount_total")
        if (
            isinstance(amount_total, int)
            and amount_total >= settings.stripe_yearly_amount_threshold
        ):
            billing_period = "yearly"
        return BillingEvent(
            kind=BillingEventKind.CHECKOUT_COMPLETED,
            account_ref=_text(obj.get("client_reference_id"))
            or _text(metadata.get("userId")),
            billing_period=billing_period,
        )
    if event_type in {"customer.subscription.created", "customer.subscription.updated"}:
        return BillingEvent(
            kind=BillingEventKind.SUBSCRIPTION_UPDATED,
            account_ref=_text(metadata.get("userId")),
            period_end=_subscription_period_end(obj),
            status=_text(obj.get("status")),
        )
    if event_type == "customer.subscription.deleted":
        return BillingEvent(
            kind=BillingEventKind.SUBSCRIPTION_CANCELED,
            account_ref=_text(metadata.get("userId")),
            status=_text(obj.get("status")),
        )
    if event_type in {"invoice.payment_succeeded", "invoice.payment_failed"}:
        logger.info("%s for invoice %s", event_type, obj.get("id"))
        return None
    logger.info("Unhandled Stripe event type: %s", event_type)
    return None


def _drop(event: BillingEvent, why: str) -> bool:
    billing_events_total.labels(kind=event.kind.value, outcome="dropped").inc()
    logger.warning("audit: billing event %s dropped: %s", event.kind.value, why)
    return False


def apply_billing_event(
    db: Session, event: BillingEvent, now: datetime | None = None
) -> bool:
    """Apply ``event`` to its account. Returns ``False`` when dropped."""
    if not event.account_ref:
        return _drop(event, "no account reference")
    try:
        account_id = int(event.account_ref)
    except (TypeError, ValueError):
        return _drop(event, f"malformed account reference {event.account_ref!r}")

    now = now or datetime.now(timezone.utc)
    if event.kind is BillingEventKind.CHECKOUT_COMPLETED:
        months = BILLING_PERIOD_MONTHS.get(event.billing_period or "monthly")
        if months is None:
            return _drop(event, f"unknown billing period {event.billing_period!r}")
        intent = BillingActivation(add_months(now, months))
    elif event.kind is BillingEventKind.SUBSCRIPTION_UPDATED:
        if event.status in ACTIVE_STATUSES:
            if event.period_end is None:
                return _drop(event, "active subscription without period end")
            intent = BillingActivation(event.period_end)
        else:
            intent = BillingDeactivation()
    else:
        intent = BillingDeactivation()

    user = db.get(User, account_id)
    if user is None:
        return _drop(event, f"unknown account {account_id}")
    apply_intent(user, intent)
    db.commit()
    billing_events_total.labels(kind=event.kind.value, outcome="applied").inc()
    logger.info(
        "billing %s applied to account %s (%s)",
        event.kind.value,
        account_id,
        type(intent).__name__,
    )
    return True


__all__ = [
    "ACTIVE_STATUSES",
    "BillingEvent",
    "BillingEventKind",
    "BillingNotConfigured",
    "apply_billing_event",
    "create_checkout_session",
    "event_from_stripe",
    "verify_webhook",
]
