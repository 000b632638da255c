from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.services.auth import Identity
from app.services.gate import LIMIT_REACHED, EstimateGate
from app.services.usage import InMemoryUsageStore, UsageLedger

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def _gate(is_pro):
    store = InMemoryUsageStore(clock=lambda: NOW)
    ledger = UsageLedger(store, clock=lambda: NOW)
    return EstimateGate(ledger, 5, is_pro=is_pro), store


@pytest.mark.asyncio
async def test_pro_caller_always_allowed_and_ledger_untouched():
    async def _pro(identity):
        return identity is not None

    gate, store = _gate(_pro)
    identity = Identity(user_id="pro-user")
    for _ in range(20):
        decision = await gate.authorize(identity, "dev-a")
        assert decision.allowed
        assert decision.is_pro
    assert len(store) == 0
    assert await gate.ledger.used_today("dev-a") == 0


@pytest.mark.asyncio
async def test_free_caller_limited_per_device():
    async def _free(identity):
        return False

    gate, _ = _gate(_free)
    decisions = [await gate.authorize(None, "dev-a") for _ in range(6)]
    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[-1].reason == LIMIT_REACHED
    assert not decisions[-1].is_pro


@pytest.mark.asyncio
async def test_entitlement_lookup_failure_counts_as_free():
    async def _broken(identity):
        raise OperationalError("SELECT 1", {}, Exception("db down"))

    gate, _ = _gate(_broken)
    decision = await gate.authorize(Identity(user_id="u1"), "dev-a")
    assert decision.allowed
    assert not decision.is_pro
    assert await gate.ledger.used_today("dev-a") == 1


@pytest.mark.asyncio
async def test_default_resolver_reads_subscription_rows():
    from app.services.entitlements import apply_entitlement_sync

    apply_entitlement_sync(
        "sub-user", status="trialing", provider="stripe", updated_at=NOW
    )
    gate, store = _gate(None)
    decision = await gate.authorize(Identity(user_id="sub-user"), "dev-a")
    assert decision.is_pro
    assert len(store) == 0

    anon = await gate.authorize(None, "dev-a")
    assert anon.allowed and not anon.is_pro
    assert len(store) == 1
