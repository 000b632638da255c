from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.dependencies import ErrorResponse, require_identity
from app.services.auth import Identity
from app.services.revenuecat import reconcile_from_remote

router = APIRouter()


class ProStatusResponse(BaseModel):
    isPro: bool
    current_period_end: datetime | None = None
    provider: str


@router.get("/pro-status")
async def pro_status_ping():
    return {"ok": True}


@router.post(
    "/pro-status",
    response_model=ProStatusResponse,
    responses={
        401: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def pro_status(identity: Identity = Depends(require_identity)):
    """Refresh the caller's entitlement from RevenueCat and report it."""
    state = await reconcile_from_remote(identity)
    return ProStatusResponse(
        isPro=state.is_pro,
        current_period_end=state.current_period_end,
        provider=state.provider,
    )
