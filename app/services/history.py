"""Estimate history: best-effort saving, listing, grouping and deletion."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from app import db as db_module
from app.metrics import persist_fail_total
from app.models import Estimate
from app.services.entitlements import as_utc

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


@dataclass(frozen=True)
class PersistOutcome:
    """Result of the save step; a failed save still lets the request succeed."""

    saved: bool
    estimate_id: str | None = None
    error: str | None = None


@dataclass
class DaySummary:
    date: str
    calories: int = 0
    protein_g: int = 0
    carbs_g: int = 0
    fat_g: int = 0
    items: list[dict[str, Any]] = field(default_factory=list)


def save_estimate_sync(user_id: str, **values: Any) -> str:
    with db_module.SessionLocal() as db:
        row = Estimate(user_id=user_id, **values)
        db.add(row)
        db.commit()
        return row.id


async def save_estimate_best_effort(user_id: str | None, **values: Any) -> PersistOutcome:
    """Attempt to store an estimate and report the outcome without raising."""
    if not user_id:
        return PersistOutcome(saved=False)
    try:
        estimate_id = await asyncio.to_thread(save_estimate_sync, user_id, **values)
    except SQLAlchemyError as exc:
        persist_fail_total.inc()
        logger.warning(
            "estimate not saved: %s", exc.__class__.__name__, extra={"user_id": user_id}
        )
        return PersistOutcome(saved=False, error="Estimate could not be saved to history")
    return PersistOutcome(saved=True, estimate_id=estimate_id)


def _local_bounds(
    start: date | None, end: date | None, tz: tzinfo | None
) -> tuple[datetime | None, datetime | None]:
    """Inclusive local dates to a half-open UTC range."""

    def _midnight(day: date) -> datetime:
        local = datetime.combine(day, time.min)
        local = local.replace(tzinfo=tz) if tz is not None else local.astimezone()
        return local.astimezone(timezone.utc)

    lower = _midnight(start) if start else None
    upper = _midnight(end + timedelta(days=1)) if end else None
    return lower, upper


def to_dict(row: Estimate) -> dict[str, Any]:
    created = as_utc(row.created_at)
    return {
        "id": row.id,
        "meal": row.meal,
        "portion": row.portion,
        "details": row.details,
        "calories": row.calories,
        "protein_g": row.protein_g,
        "carbs_g": row.carbs_g,
        "fat_g": row.fat_g,
        "confidence": row.confidence,
        "notes": row.notes,
        "source": row.source,
        "created_at": created,
    }


def list_estimates_sync(
    user_id: str,
    *,
    start: date | None = None,
    end: date | None = None,
    limit: int = 50,
    tz: tzinfo | None = None,
) -> list[dict[str, Any]]:
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    lower, upper = _local_bounds(start, end, tz)
    with db_module.SessionLocal() as db:
        q = db.query(Estimate).filter(Estimate.user_id == user_id)
        if lower is not None:
            q = q.filter(Estimate.created_at >= lower)
        if upper is not None:
            q = q.filter(Estimate.created_at < upper)
        rows = q.order_by(Estimate.created_at.desc(), Estimate.id.desc()).limit(limit).all()
        return [to_dict(r) for r in rows]


def group_by_day(rows: list[dict[str, Any]], tz: tzinfo | None = None) -> list[DaySummary]:
    """Group rows (newest first) by local calendar date, keeping that order."""
    days: dict[str, DaySummary] = {}
    for row in rows:
        created = as_utc(row["created_at"])
        local = created.astimezone(tz) if tz is not None else created.astimezone()
        key = local.strftime("%Y-%m-%d")
        summary = days.get(key)
        if summary is None:
            summary = days[key] = DaySummary(date=key)
        summary.calories += row.get("calories") or 0
        summary.protein_g += row.get("protein_g") or 0
        summary.carbs_g += row.get("carbs_g") or 0
        summary.fat_g += row.get("fat_g") or 0
        summary.items.append(row)
    return list(days.values())


def delete_estimate_sync(user_id: str, estimate_id: str) -> bool:
    with db_module.SessionLocal() as db:
        deleted = (
            db.query(Estimate)
            .filter(Estimate.id == estimate_id, Estimate.user_id == user_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted > 0


def delete_all_sync(user_id: str) -> int:
    with db_module.SessionLocal() as db:
        deleted = (
            db.query(Estimate)
            .filter(Estimate.user_id == user_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


__all__ = [
    "PersistOutcome",
    "DaySummary",
    "save_estimate_sync",
    "save_estimate_best_effort",
    "list_estimates_sync",
    "group_by_day",
    "delete_estimate_sync",
    "delete_all_sync",
    "MAX_LIST_LIMIT",
]
