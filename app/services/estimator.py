"""Meal nutrition estimates from OpenAI chat completions."""

from __future__ import annotations

import atexit
import base64
import json
import logging
import math
import os
from typing import Any, Literal

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    OpenAIError,
)
from pydantic import BaseModel

from app.config import Settings
from app.metrics import upstream_error_total
from app.services.errors import (
    ConfigurationError,
    InvalidEstimateError,
    UpstreamError,
)

logger = logging.getLogger(__name__)
settings = Settings()

Portion = Literal["small", "medium", "large"]
Confidence = Literal["low", "medium", "high"]
PORTIONS: tuple[str, ...] = ("small", "medium", "large")
CONFIDENCES: tuple[str, ...] = ("low", "medium", "high")
MACRO_FIELDS = ("calories", "protein_g", "carbs_g", "fat_g")

ESTIMATE_JSON_SCHEMA = """{
  "calories": number,
  "protein_g": number,
  "carbs_g": number,
  "fat_g": number,
  "confidence": "low" | "medium" | "high",
  "notes": string
}"""

SCAN_SCHEMA = (
    'JSON object with: "meal" (string, short description of the food), '
    '"calories" (number), "protein_g" (number), "carbs_g" (number), '
    '"fat_g" (number), "confidence" ("low"|"medium"|"high"), '
    '"notes" (string, brief caveats).'
)

_ESTIMATE_PROMPT = (
    "You are a nutrition assistant. Estimate macros for the given meal. "
    "Respond with a single JSON object only, no markdown or extra text. "
    f"Schema: {ESTIMATE_JSON_SCHEMA}. "
    'Use confidence "low" for vague descriptions, "medium" for somewhat specific, '
    '"high" for very specific. Notes: brief caveats or assumptions. '
    "Portion size: when the user specifies portion (small/medium/large), scale your "
    'estimates accordingly: treat "medium" as a typical serving, "small" as roughly '
    '0.6-0.75x that, "large" as roughly 1.3-1.5x. '
    "Details: when additional details are provided (e.g. sauces, extra cheese, "
    "cooking method), incorporate them into the estimate instead of listing them "
    "as caveats. Return the final scaled values for calories, protein_g, carbs_g, "
    "and fat_g."
)

_SCAN_PROMPT = (
    "You are a nutrition assistant. Look at the image of food and estimate what the "
    "meal is and its nutrition. Respond with a single JSON object only, no markdown "
    f"or extra text. Schema: {SCAN_SCHEMA} "
    'Use confidence "low" for unclear or partial images, "medium" for recognizable '
    'portions, "high" for clear and identifiable meals. Notes: brief caveats '
    "(e.g. portion assumed, items not fully visible)."
)


class EstimateResult(BaseModel):
    calories: int
    protein_g: int
    carbs_g: int
    fat_g: int
    confidence: Confidence
    notes: str


class ScanResult(EstimateResult):
    meal: str


_client: OpenAI | None = None
_http_client: httpx.Client | None = None


def ensure_configured() -> None:
    if not (settings.openai_api_key or "").strip():
        raise ConfigurationError("OpenAI API key not configured")


def _get_client() -> OpenAI:
    """Lazily build and cache the OpenAI client."""

    global _client, _http_client
    if _client is None:
        ensure_configured()
        mounts: dict[str, httpx.HTTPTransport] = {}
        http_proxy = os.environ.get("HTTP_PROXY")
        https_proxy = os.environ.get("HTTPS_PROXY")
        if http_proxy:
            mounts["http://"] = httpx.HTTPTransport(proxy=http_proxy)
        if https_proxy:
            mounts["https://"] = httpx.HTTPTransport(proxy=https_proxy)

        _http_client = httpx.Client(mounts=mounts) if mounts else None
        # One attempt per request: callers re-submit on failure.
        _client = OpenAI(
            api_key=settings.openai_api_key,
            http_client=_http_client,
            max_retries=0,
        )
    return _client


def _close_client() -> None:
    global _client, _http_client
    if _http_client is not None:
        _http_client.close()
    _http_client = None
    _client = None


atexit.register(_close_client)


def _error_message(exc: APIStatusError) -> str:
    body = exc.body
    if isinstance(body, dict):
        nested = body.get("error")
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
        if body.get("message"):
            return str(body["message"])
    return f"OpenAI API error: {exc.status_code}"


def _request_completion(client: OpenAI, payload: dict[str, Any]) -> str:
    """Send one chat completion and return the raw message content."""
    try:
        response = client.chat.completions.create(**payload)
    except APITimeoutError as exc:
        upstream_error_total.labels(kind="timeout").inc()
        logger.error("OpenAI timeout")
        raise UpstreamError("OpenAI request timed out") from exc
    except APIStatusError as exc:
        upstream_error_total.labels(kind="status").inc()
        logger.error("OpenAI error", extra={"status_code": exc.status_code})
        raise UpstreamError.from_status(exc.status_code, _error_message(exc)) from exc
    except APIConnectionError as exc:
        upstream_error_total.labels(kind="connection").inc()
        logger.error("OpenAI connection failed: %s", exc)
        raise UpstreamError("OpenAI request failed") from exc
    except OpenAIError as exc:
        upstream_error_total.labels(kind="other").inc()
        logger.exception("OpenAI request failed")
        raise UpstreamError("OpenAI request failed") from exc

    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError) as exc:
        upstream_error_total.labels(kind="invalid").inc()
        raise InvalidEstimateError("Invalid response from OpenAI") from exc
    if not isinstance(content, str):
        upstream_error_total.labels(kind="invalid").inc()
        raise InvalidEstimateError("Invalid response from OpenAI")
    return content


def _load_json(content: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise InvalidEstimateError("OpenAI response was not valid JSON") from exc


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _parse_macros(data: dict[str, Any]) -> dict[str, Any] | None:
    confidence = data.get("confidence")
    if not isinstance(confidence, str) or confidence not in CONFIDENCES:
        return None
    parsed: dict[str, Any] = {}
    for field in MACRO_FIELDS:
        number = _to_number(data.get(field))
        if number is None:
            return None
        parsed[field] = max(0, _round_half_up(number))
    notes = data.get("notes")
    parsed["confidence"] = confidence
    parsed["notes"] = notes if isinstance(notes, str) else ("" if notes is None else str(notes))
    return parsed


def parse_estimate(raw: Any) -> EstimateResult:
    """Validate a provider payload; any bad field rejects the whole estimate."""
    if not isinstance(raw, dict):
        raise InvalidEstimateError("OpenAI response missing required estimate fields")
    parsed = _parse_macros(raw)
    if parsed is None:
        raise InvalidEstimateError("OpenAI response missing required estimate fields")
    return EstimateResult(**parsed)


def parse_scan_result(raw: Any) -> ScanResult:
    if not isinstance(raw, dict):
        raise InvalidEstimateError("OpenAI response missing required fields")
    meal = raw.get("meal")
    meal = (meal if isinstance(meal, str) else str(meal or "")).strip()
    parsed = _parse_macros(raw)
    if not meal or parsed is None:
        raise InvalidEstimateError("OpenAI response missing required fields")
    return ScanResult(meal=meal, **parsed)


def build_estimate_messages(
    meal: str, portion: str, details: str | None = None
) -> list[dict[str, Any]]:
    if details:
        user = (
            f"Estimate nutrition for this meal. Portion size: {portion}. "
            f"Details: {details}. Meal: {meal}"
        )
    else:
        user = f"Estimate nutrition for this meal. Portion size: {portion}. Meal: {meal}"
    return [
        {"role": "system", "content": _ESTIMATE_PROMPT},
        {"role": "user", "content": user},
    ]


def call_estimate(meal: str, portion: str, details: str | None = None) -> EstimateResult:
    """Ask the model for an estimate of ``meal``.

    Parameters
    ----------
    meal: str
        Trimmed, non-empty meal description.
    portion: str
        One of ``small``, ``medium`` or ``large``; scaling is done by the model.
    details: str | None
        Extra context the model must fold into the numbers.

    Raises ``UpstreamError`` for transport/HTTP failures and
    ``InvalidEstimateError`` when the answer does not match the schema.
    """
    client = _get_client()
    payload = {
        "model": settings.openai_model,
        "messages": build_estimate_messages(meal, portion, details),
        "response_format": {"type": "json_object"},
        "temperature": settings.openai_temperature,
        "timeout": settings.openai_timeout_seconds,
    }
    content = _request_completion(client, payload)
    try:
        return parse_estimate(_load_json(content))
    except InvalidEstimateError:
        upstream_error_total.labels(kind="invalid").inc()
        logger.warning("Invalid estimate payload from OpenAI")
        raise


def call_photo_estimate(image: bytes, mime: str = "image/jpeg") -> ScanResult:
    """Identify the meal in ``image`` and estimate its nutrition."""
    client = _get_client()
    data_url = f"data:{mime};base64,{base64.b64encode(image).decode()}"
    payload = {
        "model": settings.openai_model,
        "messages": [
            {"role": "system", "content": _SCAN_PROMPT},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": "Estimate the meal and nutrition for this image. Return JSON only.",
                    },
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ],
        "response_format": {"type": "json_object"},
        "temperature": settings.openai_temperature,
        "max_tokens": 500,
        "timeout": settings.openai_timeout_seconds,
    }
    content = _request_completion(client, payload)
    try:
        return parse_scan_result(_load_json(content))
    except InvalidEstimateError:
        upstream_error_total.labels(kind="invalid").inc()
        logger.warning("Invalid photo scan payload from OpenAI")
        raise


__all__ = [
    "EstimateResult",
    "ScanResult",
    "PORTIONS",
    "CONFIDENCES",
    "ensure_configured",
    "build_estimate_messages",
    "parse_estimate",
    "parse_scan_result",
    "call_estimate",
    "call_photo_estimate",
]
