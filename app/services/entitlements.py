"""Entitlement projection shared by the Stripe and RevenueCat write paths.

Both providers upsert the same ``subscriptions`` row keyed by user id. A
write carries the time it describes (``updated_at``) and is dropped when the
stored row is newer, so a delayed webhook cannot clobber a fresher poll and
vice versa. Re-applying a write with the same timestamp yields the same row.
A non-Pro result from one provider leaves the other provider's running Pro
period in place.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from app import db as db_module
from app.models import PRO_STATUSES, Profile, Subscription
from app.services.auth import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionState:
    user_id: str
    status: str
    provider: str
    current_period_end: datetime | None = None
    price_id: str | None = None
    updated_at: datetime | None = None

    @property
    def is_pro(self) -> bool:
        return self.status in PRO_STATUSES


def as_utc(value: datetime | str | None) -> datetime | None:
    """Normalize DB values (SQLite hands back naive datetimes or strings)."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_state(row: Subscription) -> SubscriptionState:
    return SubscriptionState(
        user_id=row.user_id,
        status=row.status,
        provider=row.provider,
        current_period_end=as_utc(row.current_period_end),
        price_id=row.price_id,
        updated_at=as_utc(row.updated_at),
    )


def get_subscription_sync(user_id: str) -> SubscriptionState | None:
    with db_module.SessionLocal() as db:
        row = db.get(Subscription, user_id)
        return _to_state(row) if row else None


def is_pro_sync(user_id: str) -> bool:
    state = get_subscription_sync(user_id)
    return bool(state and state.is_pro)


async def is_pro(identity: Identity | None) -> bool:
    """Anonymous callers are never Pro; a missing row means not Pro."""
    if identity is None:
        return False
    return await asyncio.to_thread(is_pro_sync, identity.user_id)


def _running_elsewhere(
    row: Subscription, status: str, provider: str, at: datetime
) -> bool:
    """True when a non-Pro result would end another provider's unexpired Pro period."""
    if status in PRO_STATUSES or row.provider == provider or not row.is_pro:
        return False
    period_end = as_utc(row.current_period_end)
    return period_end is not None and period_end > at


def apply_entitlement_sync(
    user_id: str,
    *,
    status: str,
    provider: str,
    updated_at: datetime,
    current_period_end: datetime | None = None,
    price_id: str | None = None,
    stripe_customer_id: str | None = None,
    stripe_subscription_id: str | None = None,
) -> SubscriptionState:
    """Upsert the user's entitlement unless the stored row is more recent.

    A non-Pro write never ends a Pro period that another provider still holds.
    """
    updated_at = as_utc(updated_at)
    with db_module.SessionLocal() as db:
        row = db.get(Subscription, user_id)
        if row is None:
            row = Subscription(user_id=user_id)
            db.add(row)
        else:
            stored_at = as_utc(row.updated_at)
            if stored_at is not None and updated_at < stored_at:
                logger.info(
                    "stale entitlement write ignored",
                    extra={"user_id": user_id, "provider": provider},
                )
                return _to_state(row)
            if _running_elsewhere(row, status, provider, updated_at):
                logger.info(
                    "downgrade ignored; entitlement held by %s",
                    row.provider,
                    extra={"user_id": user_id, "provider": provider},
                )
                return _to_state(row)

        row.status = status
        row.provider = provider
        row.current_period_end = as_utc(current_period_end)
        row.updated_at = updated_at
        if price_id is not None:
            row.price_id = price_id
        if stripe_customer_id is not None:
            row.stripe_customer_id = stripe_customer_id
        if stripe_subscription_id is not None:
            row.stripe_subscription_id = stripe_subscription_id
        db.commit()
        return _to_state(row)


def mark_canceled_sync(user_id: str, updated_at: datetime) -> SubscriptionState | None:
    """Set an existing entitlement to ``canceled``; users without one are left alone."""
    updated_at = as_utc(updated_at)
    with db_module.SessionLocal() as db:
        row = db.get(Subscription, user_id)
        if row is None:
            return None
        stored_at = as_utc(row.updated_at)
        if stored_at is None or updated_at >= stored_at:
            row.status = "canceled"
            row.updated_at = updated_at
            db.commit()
        return _to_state(row)


def link_customer_sync(user_id: str, customer_id: str) -> None:
    with db_module.SessionLocal() as db:
        profile = db.get(Profile, user_id)
        if profile is None:
            profile = Profile(user_id=user_id)
            db.add(profile)
        profile.stripe_customer_id = customer_id
        db.commit()


def user_for_customer_sync(customer_id: str) -> str | None:
    with db_module.SessionLocal() as db:
        profile = (
            db.query(Profile).filter_by(stripe_customer_id=customer_id).first()
        )
        return profile.user_id if profile else None


def customer_for_user_sync(user_id: str) -> str | None:
    with db_module.SessionLocal() as db:
        profile = db.get(Profile, user_id)
        return profile.stripe_customer_id if profile else None


__all__ = [
    "SubscriptionState",
    "as_utc",
    "get_subscription_sync",
    "is_pro_sync",
    "is_pro",
    "apply_entitlement_sync",
    "mark_canceled_sync",
    "link_customer_sync",
    "user_for_customer_sync",
    "customer_for_user_sync",
]
