from __future__ import annotations

import json
import logging

import jwt
from fastapi import Header, Request
from pydantic import BaseModel

from app.config import Settings
from app.services.auth import Identity, bearer_token, decode_access_token
from app.services.errors import ConfigurationError
from app.services.gate import EstimateGate
from app.services.usage import (
    UsageLedger,
    build_usage_store,
    normalize_device_id,
    resolve_timezone,
)

settings = Settings()

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    error: str


class ApiError(Exception):
    """Rendered by the app as ``{"error": message}`` with ``status_code``."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


_gate: EstimateGate | None = None


def get_gate() -> EstimateGate:
    """Process-wide gate; the usage store is chosen by ``USAGE_STORE``."""
    global _gate
    if _gate is None:
        store = build_usage_store(settings.usage_store, settings.redis_url)
        ledger = UsageLedger(store, tz=resolve_timezone(settings.usage_timezone))
        _gate = EstimateGate(ledger, settings.free_daily_limit)
    return _gate


def reset_gate() -> None:
    global _gate
    _gate = None


def _identity_from_header(authorization: str | None) -> Identity | None:
    token = bearer_token(authorization)
    if token is None:
        return None
    secret = (settings.supabase_jwt_secret or "").strip()
    if not secret:
        raise ConfigurationError("SUPABASE_JWT_SECRET is not set")
    try:
        return decode_access_token(token, secret, settings.supabase_jwt_audience)
    except jwt.PyJWTError as exc:
        logger.info("rejected access token: %s", exc.__class__.__name__)
        return None


async def optional_identity(
    authorization: str | None = Header(None, alias="Authorization"),
) -> Identity | None:
    return _identity_from_header(authorization)


async def require_identity(
    authorization: str | None = Header(None, alias="Authorization"),
) -> Identity:
    if bearer_token(authorization) is None:
        raise ApiError(401, "Not authenticated")
    identity = _identity_from_header(authorization)
    if identity is None:
        raise ApiError(401, "Unauthorized")
    return identity


async def device_id(
    x_device_id: str | None = Header(None, alias="X-Device-ID"),
) -> str:
    return normalize_device_id(x_device_id)


async def json_body(request: Request) -> dict:
    """Request body as a JSON object; anything else is a 400."""
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise ApiError(400, "Invalid JSON body") from err
    if not isinstance(payload, dict):
        raise ApiError(400, "Invalid JSON body")
    return payload
