"""Open Food Facts barcode lookup."""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from app.config import Settings
from app.metrics import upstream_error_total
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)
settings = Settings()

CODE_RE = re.compile(r"^\d{8,14}$")
SOURCE = "Open Food Facts"


class BarcodeResult(BaseModel):
    meal: str
    calories: int
    protein_g: int
    carbs_g: int
    fat_g: int
    confidence: Literal["low", "medium", "high"]
    notes: str


def _num(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        match = re.match(r"\s*[-+]?(\d+(\.\d*)?|\.\d+)", value)
        return float(match.group(0)) if match else 0.0
    return 0.0


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def summarize_product(product: dict[str, Any]) -> BarcodeResult:
    """Build an estimate from a product record.

    Per-serving values win when any of them is present; otherwise the
    per-100g values are used. A macro that rounds to zero counts as missing.
    """
    nutriments = product.get("nutriments") or {}
    serving = {
        "calories": _num(nutriments.get("energy-kcal_serving")),
        "protein_g": _num(nutriments.get("proteins_serving")),
        "carbs_g": _num(nutriments.get("carbohydrates_serving")),
        "fat_g": _num(nutriments.get("fat_serving")),
    }
    per_100g = {
        "calories": _num(nutriments.get("energy-kcal_100g")),
        "protein_g": _num(nutriments.get("proteins_100g")),
        "carbs_g": _num(nutriments.get("carbohydrates_100g")),
        "fat_g": _num(nutriments.get("fat_100g")),
    }
    has_serving = any(v > 0 for v in serving.values())
    has_100g = any(v > 0 for v in per_100g.values())
    chosen = serving if has_serving else per_100g
    values = {field: _round(v) for field, v in chosen.items()}

    labels = {"calories": "calories", "protein_g": "protein", "carbs_g": "carbs", "fat_g": "fat"}
    missing = [labels[field] for field, v in values.items() if v == 0]

    if has_serving and not missing:
        confidence = "high"
    elif has_100g and not missing:
        confidence = "medium"
    else:
        confidence = "low"

    if has_serving:
        notes = f"Values per serving. Source: {SOURCE}."
    elif has_100g:
        notes = f"Values per 100g. Source: {SOURCE}."
    else:
        notes = f"Source: {SOURCE}."
    if missing:
        notes += f" Missing: {', '.join(missing)}."

    name = (
        str(product.get("product_name_en") or "").strip()
        or str(product.get("product_name") or "").strip()
        or "Product"
    )
    brand = str(product.get("brands") or "").strip()
    meal = f"{brand} {name}".strip() if brand else name

    return BarcodeResult(meal=meal, confidence=confidence, notes=notes, **values)


def normalize_code(raw: Any) -> str | None:
    """Strip everything but digits; ``None`` unless 8-14 digits remain."""
    digits = re.sub(r"\D", "", str(raw if raw is not None else ""))
    return digits if CODE_RE.match(digits) else None


async def fetch_product(code: str) -> dict[str, Any] | None:
    """Return the raw product for ``code`` or ``None`` if the database does not know it."""
    url = f"{settings.off_api_url.rstrip('/')}/api/v0/product/{code}.json"
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, timeout=settings.http_timeout_seconds)
    except httpx.HTTPError as exc:
        upstream_error_total.labels(kind="connection").inc()
        logger.error("Open Food Facts request failed: %s", exc)
        raise UpstreamError("Product lookup failed") from exc

    if resp.status_code >= 400:
        return None
    try:
        data = resp.json()
    except ValueError as exc:
        upstream_error_total.labels(kind="invalid").inc()
        raise UpstreamError("Invalid response from Open Food Facts") from exc
    if not isinstance(data, dict) or data.get("status") != 1:
        return None
    product = data.get("product")
    return product if isinstance(product, dict) else None


async def lookup_barcode(code: str) -> BarcodeResult | None:
    product = await fetch_product(code)
    if product is None:
        return None
    return summarize_product(product)


__all__ = [
    "BarcodeResult",
    "CODE_RE",
    "summarize_product",
    "normalize_code",
    "fetch_product",
    "lookup_barcode",
]
