"""Stripe checkout, billing portal and webhook event application."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import stripe

from app.config import Settings
from app.services.entitlements import (
    apply_entitlement_sync,
    customer_for_user_sync,
    link_customer_sync,
    mark_canceled_sync,
    user_for_customer_sync,
)
from app.services.errors import ConfigurationError, ServiceError

logger = logging.getLogger(__name__)
settings = Settings()

PROVIDER = "stripe"
SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
}


class BillingError(ServiceError):
    """Stripe rejected a request; status mirrors Stripe's when it is an HTTP error."""

    @classmethod
    def from_stripe(cls, exc: stripe.StripeError) -> "BillingError":
        status = getattr(exc, "http_status", None)
        if not isinstance(status, int) or not 400 <= status < 600:
            status = 500
        message = getattr(exc, "user_message", None) or str(exc) or "Stripe error"
        return cls(message, status)


def _secret_key() -> str:
    key = (settings.stripe_secret_key or "").strip()
    if not key:
        raise ConfigurationError("STRIPE_SECRET_KEY is not set")
    return key


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    return to_dict() if to_dict else {}


def _object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if value is None:
        return None
    return _as_dict(value).get("id")


def _from_unix(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _app_url() -> str:
    return settings.app_url.rstrip("/")


# --- outbound requests -----------------------------------------------------


def create_checkout_session(user_id: str, email: str | None = None) -> str:
    key = _secret_key()
    price_id = (settings.stripe_price_id or "").strip()
    if not price_id:
        raise ConfigurationError("Stripe environment variables are not configured")
    params: dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{_app_url()}/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{_app_url()}/pricing",
        "client_reference_id": user_id,
        "metadata": {"user_id": user_id},
    }
    existing_customer = customer_for_user_sync(user_id)
    if existing_customer:
        params["customer"] = existing_customer
    elif email:
        params["customer_email"] = email
    try:
        session = stripe.checkout.Session.create(api_key=key, **params)
    except stripe.StripeError as exc:
        logger.error("checkout session creation failed: %s", exc)
        raise BillingError.from_stripe(exc) from exc
    url = _as_dict(session).get("url")
    if not isinstance(url, str) or not url:
        raise BillingError("Stripe did not return a checkout URL", 500)
    return url


def customer_from_checkout_session(session_id: str) -> str | None:
    key = _secret_key()
    try:
        session = stripe.checkout.Session.retrieve(session_id, api_key=key)
    except stripe.StripeError as exc:
        raise BillingError.from_stripe(exc) from exc
    return _object_id(_as_dict(session).get("customer"))


def create_portal_session(customer_id: str) -> str:
    key = _secret_key()
    try:
        portal = stripe.billing_portal.Session.create(
            api_key=key,
            customer=customer_id,
            return_url=f"{_app_url()}/account",
        )
    except stripe.StripeError as exc:
        logger.error("portal session creation failed: %s", exc)
        raise BillingError.from_stripe(exc) from exc
    url = _as_dict(portal).get("url")
    if not isinstance(url, str) or not url:
        raise BillingError("Stripe did not return a portal URL", 500)
    return url


def verify_checkout_session(session_id: str) -> tuple[str, str]:
    """Return ``(customer_id, subscription_id)`` for a paid, completed subscription checkout."""
    key = _secret_key()
    try:
        session = _as_dict(
            stripe.checkout.Session.retrieve(
                session_id, api_key=key, expand=["subscription", "customer"]
            )
        )
    except stripe.StripeError as exc:
        raise BillingError.from_stripe(exc) from exc

    if session.get("payment_status") != "paid":
        raise BillingError("Not paid", 403)
    if session.get("mode") != "subscription":
        raise BillingError("Not a subscription session", 403)
    if not session.get("subscription"):
        raise BillingError("No subscription on session", 403)
    if session.get("status") and session.get("status") != "complete":
        raise BillingError("Session not complete", 403)

    customer_id = _object_id(session.get("customer"))
    subscription_id = _object_id(session.get("subscription"))
    if not customer_id or not subscription_id:
        raise BillingError("Missing customer or subscription id", 500)
    return customer_id, subscription_id


# --- webhooks --------------------------------------------------------------


def webhook_secret() -> str:
    secret = (settings.stripe_webhook_secret or "").strip()
    if not secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
    return secret


def construct_event(payload: bytes, signature: str) -> dict[str, Any]:
    """Verify the ``Stripe-Signature`` header and return the event as a plain dict.

    Raises ``stripe.SignatureVerificationError`` or ``ValueError``.
    """
    secret = webhook_secret()
    stripe.Webhook.construct_event(payload, signature, secret)
    return json.loads(payload)


def _period_end(sub: dict[str, Any]) -> datetime | None:
    end = sub.get("current_period_end")
    if end is None:
        # Newer API versions report the period on the subscription item.
        items = (sub.get("items") or {}).get("data") or []
        end = items[0].get("current_period_end") if items else None
    return _from_unix(end)


def _price_id(sub: dict[str, Any]) -> str | None:
    items = (sub.get("items") or {}).get("data") or []
    if not items:
        return None
    return _object_id(items[0].get("price"))


def upsert_subscription(
    user_id: str,
    sub: dict[str, Any],
    updated_at: datetime,
    customer_id: str | None = None,
):
    return apply_entitlement_sync(
        user_id,
        status=str(sub.get("status") or "inactive"),
        provider=PROVIDER,
        updated_at=updated_at,
        current_period_end=_period_end(sub),
        price_id=_price_id(sub),
        stripe_customer_id=customer_id or _object_id(sub.get("customer")),
        stripe_subscription_id=sub.get("id"),
    )


def retrieve_subscription(subscription_id: str) -> dict[str, Any]:
    return _as_dict(stripe.Subscription.retrieve(subscription_id, api_key=_secret_key()))


def _checkout_user_id(session: dict[str, Any]) -> str | None:
    ref = (session.get("client_reference_id") or "").strip()
    if ref:
        return ref
    metadata = session.get("metadata") or {}
    uid = str(metadata.get("user_id") or "").strip()
    return uid or None


def apply_webhook_event(event: dict[str, Any]) -> None:
    """Project one Stripe event onto profiles/subscriptions.

    Re-applying an event leaves the rows unchanged.
    """
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    occurred_at = _from_unix(event.get("created")) or datetime.now(timezone.utc)

    if event_type == "checkout.session.completed":
        user_id = _checkout_user_id(obj)
        customer_id = _object_id(obj.get("customer"))
        if not user_id or not customer_id:
            logger.warning(
                "checkout session without user or customer",
                extra={"event_type": event_type},
            )
            return
        link_customer_sync(user_id, customer_id)
        subscription_id = _object_id(obj.get("subscription"))
        if subscription_id:
            sub = retrieve_subscription(subscription_id)
            upsert_subscription(user_id, sub, occurred_at, customer_id)
        logger.info(
            "checkout linked", extra={"user_id": user_id, "event_type": event_type}
        )
        return

    if event_type in SUBSCRIPTION_EVENTS or event_type == "customer.subscription.deleted":
        customer_id = _object_id(obj.get("customer"))
        user_id = user_for_customer_sync(customer_id) if customer_id else None
        if not user_id:
            logger.warning(
                "no user for stripe customer", extra={"event_type": event_type}
            )
            return
        if event_type == "customer.subscription.deleted":
            mark_canceled_sync(user_id, occurred_at)
        else:
            upsert_subscription(user_id, obj, occurred_at)
        logger.info(
            "subscription updated", extra={"user_id": user_id, "event_type": event_type}
        )
        return

    logger.debug("ignored stripe event", extra={"event_type": event_type})


def process_webhook_event(event: dict[str, Any]) -> None:
    """Background entry point; errors are logged and never reach the caller."""
    try:
        apply_webhook_event(event)
    except Exception:
        logger.exception(
            "failed to apply stripe event", extra={"event_type": event.get("type")}
        )


__all__ = [
    "BillingError",
    "create_checkout_session",
    "customer_from_checkout_session",
    "create_portal_session",
    "verify_checkout_session",
    "webhook_secret",
    "construct_event",
    "apply_webhook_event",
    "process_webhook_event",
    "upsert_subscription",
    "retrieve_subscription",
]
