from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime
from typing import Any, List

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import Settings
from app.dependencies import (
    ApiError,
    ErrorResponse,
    device_id,
    get_gate,
    json_body,
    optional_identity,
    require_identity,
)
from app.metrics import estimate_latency_seconds, estimate_requests_total
from app.services import history
from app.services.auth import Identity
from app.services.estimator import (
    PORTIONS,
    EstimateResult,
    ScanResult,
    call_estimate,
    call_photo_estimate,
    ensure_configured,
)
from app.services.usage import resolve_timezone

settings = Settings()
logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024
ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
OPTIONAL_FILE = File(None)

router = APIRouter()


class EstimateRequest(BaseModel):
    meal: str
    portion: str = "medium"
    details: str | None = None


class EstimateResponse(BaseModel):
    result: EstimateResult
    saved: bool = False
    warning: str | None = None


class ScanResponse(BaseModel):
    result: ScanResult
    saved: bool = False
    warning: str | None = None


class EstimateItem(BaseModel):
    id: str
    meal: str
    portion: str
    details: str | None = None
    calories: int
    protein_g: int
    carbs_g: int
    fat_g: int
    confidence: str | None = None
    notes: str | None = None
    source: str
    created_at: datetime


class EstimateList(BaseModel):
    data: List[EstimateItem]


class DaySummaryItem(BaseModel):
    date: str
    calories: int
    protein_g: int
    carbs_g: int
    fat_g: int
    items: List[EstimateItem]


class DailyList(BaseModel):
    data: List[DaySummaryItem]


class DeleteResponse(BaseModel):
    ok: bool = True
    deleted: int


class UsageResponse(BaseModel):
    limit: int
    used: int
    remaining: int | None
    is_pro: bool


def parse_estimate_request(body: dict[str, Any]) -> EstimateRequest:
    """Trim inputs; an unknown portion falls back to ``medium``."""
    meal = body.get("meal")
    if not isinstance(meal, str) or not meal.strip():
        raise ApiError(400, "Body must include a non-empty string 'meal'")
    portion = body.get("portion")
    if portion not in PORTIONS:
        portion = "medium"
    details = body.get("details")
    details = details.strip() if isinstance(details, str) else None
    return EstimateRequest(meal=meal.strip(), portion=portion, details=details or None)


async def _authorize(identity: Identity | None, device: str) -> JSONResponse | None:
    decision = await get_gate().authorize(identity, device)
    if decision.allowed:
        return None
    err = ErrorResponse(error=decision.reason or "Daily free limit reached")
    return JSONResponse(status_code=429, content=err.model_dump())


@router.post(
    "/estimate",
    response_model=EstimateResponse,
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def estimate(
    body: dict = Depends(json_body),
    identity: Identity | None = Depends(optional_identity),
    device: str = Depends(device_id),
):
    req = parse_estimate_request(body)
    ensure_configured()
    if denied := await _authorize(identity, device):
        return denied

    estimate_requests_total.labels(kind="text").inc()
    start = time.perf_counter()
    try:
        result = await asyncio.to_thread(call_estimate, req.meal, req.portion, req.details)
    finally:
        estimate_latency_seconds.labels(kind="text").observe(time.perf_counter() - start)

    outcome = await history.save_estimate_best_effort(
        identity.user_id if identity else None,
        meal=req.meal,
        portion=req.portion,
        details=req.details,
        source="text",
        **result.model_dump(),
    )
    return EstimateResponse(result=result, saved=outcome.saved, warning=outcome.error)


@router.post(
    "/scan-photo",
    response_model=ScanResponse,
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def scan_photo(
    image: UploadFile | None = OPTIONAL_FILE,
    identity: Identity | None = Depends(optional_identity),
    device: str = Depends(device_id),
):
    if image is None or not image.filename:
        raise ApiError(400, "Missing or invalid 'image' file")
    if image.size is not None and image.size > MAX_IMAGE_BYTES:
        raise ApiError(400, "Image must be 5MB or smaller")
    contents = await image.read(MAX_IMAGE_BYTES + 1)
    if len(contents) > MAX_IMAGE_BYTES:
        raise ApiError(400, "Image must be 5MB or smaller")
    mime = (image.content_type or "").lower()
    if not mime.startswith(ALLOWED_IMAGE_TYPES):
        raise ApiError(400, "File must be an image (JPEG, PNG, WebP, or GIF)")

    ensure_configured()
    if denied := await _authorize(identity, device):
        return denied

    estimate_requests_total.labels(kind="photo").inc()
    start = time.perf_counter()
    try:
        result = await asyncio.to_thread(call_photo_estimate, contents, mime)
    finally:
        estimate_latency_seconds.labels(kind="photo").observe(time.perf_counter() - start)

    outcome = await history.save_estimate_best_effort(
        identity.user_id if identity else None,
        portion="medium",
        details=None,
        source="photo",
        **result.model_dump(),
    )
    return ScanResponse(result=result, saved=outcome.saved, warning=outcome.error)


@router.get(
    "/estimates",
    response_model=EstimateList,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def list_estimates(
    start: date | None = Query(None),
    end: date | None = Query(None),
    limit: int = Query(50),
    identity: Identity = Depends(require_identity),
):
    rows = await asyncio.to_thread(
        history.list_estimates_sync,
        identity.user_id,
        start=start,
        end=end,
        limit=limit,
        tz=resolve_timezone(settings.usage_timezone),
    )
    return EstimateList(data=[EstimateItem(**r) for r in rows])


@router.get(
    "/estimates/daily",
    response_model=DailyList,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def daily_estimates(
    start: date | None = Query(None),
    end: date | None = Query(None),
    identity: Identity = Depends(require_identity),
):
    tz = resolve_timezone(settings.usage_timezone)
    rows = await asyncio.to_thread(
        history.list_estimates_sync,
        identity.user_id,
        start=start,
        end=end,
        limit=history.MAX_LIST_LIMIT,
        tz=tz,
    )
    days = history.group_by_day(rows, tz)
    return DailyList(
        data=[
            DaySummaryItem(
                date=d.date,
                calories=d.calories,
                protein_g=d.protein_g,
                carbs_g=d.carbs_g,
                fat_g=d.fat_g,
                items=[EstimateItem(**r) for r in d.items],
            )
            for d in days
        ]
    )


@router.delete(
    "/estimates/{estimate_id}",
    response_model=DeleteResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def delete_estimate(
    estimate_id: str,
    identity: Identity = Depends(require_identity),
):
    deleted = await asyncio.to_thread(
        history.delete_estimate_sync, identity.user_id, estimate_id
    )
    if not deleted:
        raise ApiError(404, "Estimate not found")
    return DeleteResponse(deleted=1)


@router.delete(
    "/estimates",
    response_model=DeleteResponse,
    responses={401: {"model": ErrorResponse}},
)
async def delete_all_estimates(identity: Identity = Depends(require_identity)):
    deleted = await asyncio.to_thread(history.delete_all_sync, identity.user_id)
    logger.info("history cleared", extra={"user_id": identity.user_id})
    return DeleteResponse(deleted=deleted)


@router.get("/usage", response_model=UsageResponse)
async def usage(
    identity: Identity | None = Depends(optional_identity),
    device: str = Depends(device_id),
):
    gate = get_gate()
    used = await gate.used_today(device)
    if await gate.check_pro(identity):
        return UsageResponse(limit=gate.limit, used=used, remaining=None, is_pro=True)
    remaining = max(0, gate.limit - used)
    return UsageResponse(limit=gate.limit, used=used, remaining=remaining, is_pro=False)
