from sqlalchemy import Column, String

from app.models.base import Base


class Profile(Base):
    """Maps a user to the Stripe customer created during checkout."""

    __tablename__ = "profiles"

    user_id = Column(String(64), primary_key=True)
    stripe_customer_id = Column(String(64), nullable=True, unique=True)


__all__ = ["Profile"]
