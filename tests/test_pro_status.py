from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.services import revenuecat
from app.services.entitlements import (
    apply_entitlement_sync,
    get_subscription_sync,
    is_pro_sync,
)

_REAL_ASYNC_CLIENT = httpx.AsyncClient


@pytest.fixture
def rc_api(monkeypatch):
    state = {"handler": None, "requests": []}

    def _handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return state["handler"](request)

    def _client(*args, **kwargs):
        return _REAL_ASYNC_CLIENT(transport=httpx.MockTransport(_handler))

    monkeypatch.setattr(revenuecat.settings, "revenuecat_secret_key", "rc_secret")
    monkeypatch.setattr(revenuecat.httpx, "AsyncClient", _client)
    return state


def _subscriber(expires_date):
    return {"subscriber": {"entitlements": {"pro": {"expires_date": expires_date}}}}


def test_get_is_a_health_check(client):
    resp = client.get("/api/pro-status")
    assert resp.json() == {"ok": True}


def test_requires_token(client, rc_api):
    resp = client.post("/api/pro-status")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Not authenticated"}


def test_missing_revenuecat_key_is_500(client, auth_headers, monkeypatch):
    monkeypatch.setattr(revenuecat.settings, "revenuecat_secret_key", None)
    resp = client.post("/api/pro-status", headers=auth_headers())
    assert resp.status_code == 500
    assert resp.json() == {"error": "RevenueCat not configured"}


def test_active_entitlement_marks_user_pro(client, auth_headers, rc_api):
    rc_api["handler"] = lambda request: httpx.Response(200, json=_subscriber("2099-01-01T00:00:00Z"))
    resp = client.post("/api/pro-status", headers=auth_headers("user-rc"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["isPro"] is True
    assert body["provider"] == "revenuecat"
    assert body["current_period_end"].startswith("2099-01-01T00:00:00")

    request = rc_api["requests"][0]
    assert request.url.path.endswith("/user-rc")
    assert request.headers["Authorization"] == "Bearer rc_secret"
    assert is_pro_sync("user-rc")


def test_lifetime_entitlement_without_expiry(client, auth_headers, rc_api):
    rc_api["handler"] = lambda request: httpx.Response(200, json={"value": _subscriber(None)})
    resp = client.post("/api/pro-status", headers=auth_headers("user-rc"))
    assert resp.json()["isPro"] is True
    assert resp.json()["current_period_end"] is None


def test_expired_entitlement_is_inactive(client, auth_headers, rc_api):
    rc_api["handler"] = lambda request: httpx.Response(200, json=_subscriber("2020-01-01T00:00:00Z"))
    resp = client.post("/api/pro-status", headers=auth_headers("user-rc"))
    assert resp.json()["isPro"] is False
    assert get_subscription_sync("user-rc").status == "inactive"


def test_unknown_subscriber_is_not_entitled(client, auth_headers, rc_api):
    rc_api["handler"] = lambda request: httpx.Response(404, json={"message": "not found"})
    resp = client.post("/api/pro-status", headers=auth_headers("user-rc"))
    assert resp.status_code == 200
    assert resp.json()["isPro"] is False


def test_revenuecat_error_is_502(client, auth_headers, rc_api):
    rc_api["handler"] = lambda request: httpx.Response(500, text="internal error")
    resp = client.post("/api/pro-status", headers=auth_headers("user-rc"))
    assert resp.status_code == 502
    assert resp.json() == {"error": "internal error"}
    assert get_subscription_sync("user-rc") is None


def test_malformed_payload_is_502(client, auth_headers, rc_api):
    rc_api["handler"] = lambda request: httpx.Response(200, text="<html>")
    resp = client.post("/api/pro-status", headers=auth_headers("user-rc"))
    assert resp.status_code == 502
    assert resp.json() == {"error": "Invalid response from RevenueCat"}


def test_cors_preflight(client):
    resp = client.options(
        "/api/pro-status",
        headers={
            "Origin": "capacitor://localhost",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"


def test_unknown_subscriber_keeps_active_stripe_subscription(client, auth_headers, rc_api):
    period_end = datetime.now(timezone.utc) + timedelta(days=20)
    apply_entitlement_sync(
        "user-web",
        status="active",
        provider="stripe",
        updated_at=datetime.now(timezone.utc) - timedelta(days=10),
        current_period_end=period_end,
        price_id="price_pro",
    )
    rc_api["handler"] = lambda request: httpx.Response(404, json={"message": "not found"})

    resp = client.post("/api/pro-status", headers=auth_headers("user-web"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["isPro"] is True
    assert body["provider"] == "stripe"
    assert is_pro_sync("user-web")
