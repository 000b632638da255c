from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from app.models.base import Base

PRO_STATUSES = frozenset({"active", "trialing"})


class Subscription(Base):
    """Entitlement projection: one row per user, written by Stripe or RevenueCat."""

    __tablename__ = "subscriptions"

    user_id = Column(String(64), primary_key=True)
    status = Column(String(32), nullable=False)
    provider = Column(String(16), nullable=False)  # stripe | revenuecat
    price_id = Column(String(128), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    stripe_customer_id = Column(String(64), nullable=True)
    stripe_subscription_id = Column(String(64), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_pro(self) -> bool:
        return self.status in PRO_STATUSES


__all__ = ["Subscription", "PRO_STATUSES"]
