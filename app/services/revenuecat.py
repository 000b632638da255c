"""On-demand entitlement reconciliation against RevenueCat."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from app.config import Settings
from app.metrics import entitlement_sync_fail_total
from app.services.auth import Identity
from app.services.entitlements import SubscriptionState, apply_entitlement_sync
from app.services.errors import ConfigurationError, EntitlementServiceError

logger = logging.getLogger(__name__)
settings = Settings()

PROVIDER = "revenuecat"


async def fetch_subscriber(app_user_id: str) -> dict[str, Any] | None:
    """Return the RevenueCat subscriber object, or ``None`` when it does not exist."""
    secret = (settings.revenuecat_secret_key or "").strip()
    if not secret:
        raise ConfigurationError("RevenueCat not configured")

    url = f"{settings.revenuecat_api_url.rstrip('/')}/{quote(app_user_id, safe='')}"
    headers = {
        "Authorization": f"Bearer {secret}",
        "Content-Type": "application/json",
    }
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                url, headers=headers, timeout=settings.http_timeout_seconds
            )
    except httpx.HTTPError as exc:
        entitlement_sync_fail_total.inc()
        logger.error("RevenueCat request failed: %s", exc)
        raise EntitlementServiceError("RevenueCat request failed") from exc

    if resp.status_code == 404:
        return None
    if resp.status_code >= 400:
        entitlement_sync_fail_total.inc()
        message = resp.text or resp.reason_phrase or "RevenueCat request failed"
        logger.error(
            "RevenueCat returned an error", extra={"status_code": resp.status_code}
        )
        raise EntitlementServiceError(message)

    try:
        raw = resp.json()
    except ValueError as exc:
        entitlement_sync_fail_total.inc()
        raise EntitlementServiceError("Invalid response from RevenueCat") from exc
    if not isinstance(raw, dict):
        entitlement_sync_fail_total.inc()
        raise EntitlementServiceError("Invalid response from RevenueCat")

    # Some proxies wrap the body as {"value": {...}}.
    body = raw.get("value") if isinstance(raw.get("value"), dict) else raw
    subscriber = body.get("subscriber")
    if subscriber is None:
        return {}
    if not isinstance(subscriber, dict):
        entitlement_sync_fail_total.inc()
        raise EntitlementServiceError("Invalid response from RevenueCat")
    return subscriber


def _parse_expiry(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise EntitlementServiceError("Invalid entitlement expiration")
    value = value.strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise EntitlementServiceError("Invalid entitlement expiration") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def entitlement_status(
    subscriber: dict[str, Any] | None,
    entitlement_id: str,
    now: datetime,
) -> tuple[bool, datetime | None]:
    """Active when the entitlement exists and has no expiry or a future one."""
    entitlements = (subscriber or {}).get("entitlements") or {}
    if not isinstance(entitlements, dict):
        raise EntitlementServiceError("Invalid entitlements payload")
    entitlement = entitlements.get(entitlement_id)
    if entitlement is None:
        return False, None
    if not isinstance(entitlement, dict):
        raise EntitlementServiceError("Invalid entitlements payload")
    expires_at = _parse_expiry(entitlement.get("expires_date"))
    return expires_at is None or expires_at > now, expires_at


async def reconcile_from_remote(identity: Identity) -> SubscriptionState:
    """Poll RevenueCat and project the result onto the local entitlement row."""
    subscriber = await fetch_subscriber(identity.user_id)
    now = datetime.now(timezone.utc)
    active, expires_at = entitlement_status(
        subscriber, settings.revenuecat_entitlement_id, now
    )
    state = await asyncio.to_thread(
        apply_entitlement_sync,
        identity.user_id,
        status="active" if active else "inactive",
        provider=PROVIDER,
        updated_at=now,
        current_period_end=expires_at,
    )
    logger.info(
        "entitlement reconciled",
        extra={"user_id": identity.user_id, "provider": PROVIDER},
    )
    return state


__all__ = ["fetch_subscriber", "entitlement_status", "reconcile_from_remote"]
