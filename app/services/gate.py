"""Single decision point in front of paid inference calls."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.metrics import quota_reject_total
from app.services import entitlements
from app.services.auth import Identity
from app.services.errors import UsageStoreUnavailable
from app.services.usage import UsageLedger

logger = logging.getLogger(__name__)

LIMIT_REACHED = "Daily free limit reached"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str | None = None
    is_pro: bool = False


class EstimateGate:
    """Pro callers pass untouched; everyone else spends one unit of the device ledger.

    The entitlement check runs first so a Pro caller never moves the counter.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        limit: int,
        is_pro: Callable[[Identity | None], Awaitable[bool]] | None = None,
    ) -> None:
        self.ledger = ledger
        self.limit = limit
        self._is_pro = is_pro or entitlements.is_pro

    async def check_pro(self, identity: Identity | None) -> bool:
        try:
            return await self._is_pro(identity)
        except SQLAlchemyError:
            logger.exception(
                "entitlement lookup failed; treating caller as free",
                extra={"user_id": identity.user_id if identity else None},
            )
            return False

    async def used_today(self, device_id: str) -> int:
        try:
            return await self.ledger.used_today(device_id)
        except RedisError as exc:
            logger.exception("Redis unavailable for usage lookup: %s", exc)
            raise UsageStoreUnavailable("Usage store unavailable") from exc

    async def authorize(self, identity: Identity | None, device_id: str) -> GateDecision:
        if await self.check_pro(identity):
            return GateDecision(allowed=True, is_pro=True)
        try:
            consumed = await self.ledger.try_consume(device_id, self.limit)
        except RedisError as exc:
            logger.exception("Redis unavailable for usage counting: %s", exc)
            raise UsageStoreUnavailable("Usage store unavailable") from exc
        if consumed:
            return GateDecision(allowed=True)
        quota_reject_total.inc()
        logger.info("free limit reached", extra={"device_id": device_id})
        return GateDecision(allowed=False, reason=LIMIT_REACHED)


__all__ = ["EstimateGate", "GateDecision", "LIMIT_REACHED"]
