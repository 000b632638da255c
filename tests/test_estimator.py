from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError

from app.services import estimator
from app.services.errors import (
    ConfigurationError,
    InvalidEstimateError,
    UpstreamError,
)

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _fake_openai_response(payload: str) -> SimpleNamespace:
    message = SimpleNamespace(content=payload)
    choice = SimpleNamespace(message=message)
    return SimpleNamespace(choices=[choice])


def _fake_client(create_fn):
    chat = SimpleNamespace(completions=SimpleNamespace(create=create_fn))
    return SimpleNamespace(chat=chat)


def _status_error(status: int, message: str = "upstream says no") -> APIStatusError:
    body = {"error": {"message": message}}
    response = httpx.Response(status, request=_REQUEST, json=body)
    return APIStatusError(message, response=response, body=body)


def test_parse_estimate_coerces_and_rounds():
    result = estimator.parse_estimate(
        {
            "calories": 420.4,
            "protein_g": "30",
            "carbs_g": 39.5,
            "fat_g": 12,
            "confidence": "medium",
            "notes": "x",
        }
    )
    assert (result.calories, result.protein_g, result.carbs_g, result.fat_g) == (420, 30, 40, 12)
    assert result.confidence == "medium"
    assert result.notes == "x"


def test_parse_estimate_rounds_half_up_and_clamps_negative():
    result = estimator.parse_estimate(
        {"calories": 2.5, "protein_g": -3, "carbs_g": "0.5", "fat_g": -0.4, "confidence": "low"}
    )
    assert (result.calories, result.protein_g, result.carbs_g, result.fat_g) == (3, 0, 1, 0)
    assert result.notes == ""


@pytest.mark.parametrize("confidence", [None, "certain", "HIGH", 1])
def test_parse_estimate_rejects_bad_confidence(confidence):
    raw = {"calories": 100, "protein_g": 1, "carbs_g": 1, "fat_g": 1, "notes": ""}
    if confidence is not None:
        raw["confidence"] = confidence
    with pytest.raises(InvalidEstimateError):
        estimator.parse_estimate(raw)


@pytest.mark.parametrize("bad", ["abc", "", None, True, float("nan"), [1]])
def test_parse_estimate_rejects_non_numeric_macro(bad):
    raw = {"calories": bad, "protein_g": 1, "carbs_g": 1, "fat_g": 1, "confidence": "high"}
    with pytest.raises(InvalidEstimateError):
        estimator.parse_estimate(raw)


def test_parse_estimate_rejects_non_object():
    with pytest.raises(InvalidEstimateError):
        estimator.parse_estimate([1, 2, 3])


def test_parse_scan_result_requires_meal():
    raw = {"calories": 500, "protein_g": 20, "carbs_g": 60, "fat_g": 18, "confidence": "medium"}
    with pytest.raises(InvalidEstimateError):
        estimator.parse_scan_result(raw)
    result = estimator.parse_scan_result({**raw, "meal": "  Margherita pizza "})
    assert result.meal == "Margherita pizza"


def test_build_messages_include_portion_and_details():
    messages = estimator.build_estimate_messages("burrito", "large", "extra guac")
    assert messages[0]["role"] == "system"
    assert "1.3-1.5x" in messages[0]["content"]
    assert messages[1]["content"] == (
        "Estimate nutrition for this meal. Portion size: large. "
        "Details: extra guac. Meal: burrito"
    )
    plain = estimator.build_estimate_messages("burrito", "small")
    assert "Details" not in plain[1]["content"]


def test_call_estimate_sends_json_mode_request(monkeypatch):
    captured: dict = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return _fake_openai_response(
            json.dumps(
                {"calories": 650, "protein_g": 28, "carbs_g": 70, "fat_g": 25, "confidence": "high", "notes": "ok"}
            )
        )

    monkeypatch.setattr(estimator, "_get_client", lambda: _fake_client(_create))
    result = estimator.call_estimate("chicken burrito", "medium")

    assert result.calories == 650
    assert captured["model"] == estimator.settings.openai_model
    assert captured["response_format"] == {"type": "json_object"}
    assert captured["temperature"] == estimator.settings.openai_temperature
    assert captured["timeout"] == estimator.settings.openai_timeout_seconds


def test_call_estimate_invalid_json_is_invalid_estimate(monkeypatch):
    monkeypatch.setattr(
        estimator, "_get_client", lambda: _fake_client(lambda **_: _fake_openai_response("not json"))
    )
    with pytest.raises(InvalidEstimateError) as exc_info:
        estimator.call_estimate("soup", "small")
    assert exc_info.value.status_code == 502
    assert exc_info.value.message == "OpenAI response was not valid JSON"


def test_call_estimate_missing_content(monkeypatch):
    monkeypatch.setattr(
        estimator, "_get_client", lambda: _fake_client(lambda **_: SimpleNamespace(choices=[]))
    )
    with pytest.raises(InvalidEstimateError) as exc_info:
        estimator.call_estimate("soup", "small")
    assert exc_info.value.message == "Invalid response from OpenAI"


@pytest.mark.parametrize(
    "status, expected",
    [(500, 502), (503, 502), (400, 400), (429, 400)],
)
def test_call_estimate_maps_provider_status(monkeypatch, status, expected):
    def _create(**_):
        raise _status_error(status)

    monkeypatch.setattr(estimator, "_get_client", lambda: _fake_client(_create))
    with pytest.raises(UpstreamError) as exc_info:
        estimator.call_estimate("soup", "small")
    assert exc_info.value.status_code == expected
    assert exc_info.value.message == "upstream says no"


def test_call_estimate_timeout_and_connection_are_502(monkeypatch):
    def _timeout(**_):
        raise APITimeoutError(request=_REQUEST)

    def _connection(**_):
        raise APIConnectionError(request=_REQUEST)

    for create in (_timeout, _connection):
        monkeypatch.setattr(estimator, "_get_client", lambda create=create: _fake_client(create))
        with pytest.raises(UpstreamError) as exc_info:
            estimator.call_estimate("soup", "small")
        assert exc_info.value.status_code == 502


def test_call_photo_estimate_sends_data_url(monkeypatch):
    captured: dict = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return _fake_openai_response(
            json.dumps(
                {"meal": "Caesar salad", "calories": 350, "protein_g": 12, "carbs_g": 15, "fat_g": 26, "confidence": "medium", "notes": ""}
            )
        )

    monkeypatch.setattr(estimator, "_get_client", lambda: _fake_client(_create))
    result = estimator.call_photo_estimate(b"\x89PNG", "image/png")

    assert result.meal == "Caesar salad"
    image_part = captured["messages"][1]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    assert captured["max_tokens"] == 500


def test_ensure_configured_requires_key(monkeypatch):
    monkeypatch.setattr(estimator.settings, "openai_api_key", "  ")
    with pytest.raises(ConfigurationError) as exc_info:
        estimator.ensure_configured()
    assert exc_info.value.status_code == 500
