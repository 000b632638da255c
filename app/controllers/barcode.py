from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.dependencies import ApiError, ErrorResponse, json_body
from app.services.food_facts import (
    CODE_RE,
    BarcodeResult,
    lookup_barcode,
    normalize_code,
)

logger = logging.getLogger(__name__)

router = APIRouter()

INVALID_CODE = "Barcode must be 8-14 digits"


class BarcodeResponse(BaseModel):
    result: BarcodeResult


async def _lookup(code: str) -> BarcodeResponse:
    result = await lookup_barcode(code)
    if result is None:
        raise ApiError(404, "Product not found")
    return BarcodeResponse(result=result)


_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


@router.get("/barcode", response_model=BarcodeResponse, responses=_RESPONSES)
async def barcode_get(code: str = Query("")):
    code = code.strip()
    if not CODE_RE.match(code):
        raise ApiError(400, INVALID_CODE)
    return await _lookup(code)


@router.post("/barcode", response_model=BarcodeResponse, responses=_RESPONSES)
async def barcode_post(body: dict = Depends(json_body)):
    code = normalize_code(body.get("code"))
    if code is None:
        raise ApiError(400, INVALID_CODE)
    return await _lookup(code)
