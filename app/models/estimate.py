from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from app.models.base import Base


class Estimate(Base):
    """One completed nutrition estimate owned by an authenticated user."""

    __tablename__ = "estimates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(64), nullable=False)
    meal = Column(Text, nullable=False)
    portion = Column(String(8), nullable=False, server_default="medium")
    details = Column(Text, nullable=True)
    calories = Column(Integer, nullable=False)
    protein_g = Column(Integer, nullable=False)
    carbs_g = Column(Integer, nullable=False)
    fat_g = Column(Integer, nullable=False)
    confidence = Column(String(8), nullable=True)
    notes = Column(Text, nullable=True)
    source = Column(String(8), nullable=False, server_default="text")
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (Index("ix_estimates_user_created", "user_id", "created_at"),)


__all__ = ["Estimate"]
