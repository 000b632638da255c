"""Per-device daily counter for free estimates.

The ledger itself holds no state: it reads and writes ``UsageRecord`` values
through a ``UsageStore``. The in-memory store keeps the single-process
behaviour; the Redis store lets several instances share one counter. Both
expire a device's record at the next local midnight.

The read-then-write in :meth:`UsageLedger.try_consume` is not atomic, so two
simultaneous requests from one device may both pass at ``count == limit - 1``.
That overshoot is accepted: the limit is a soft one.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Protocol
from zoneinfo import ZoneInfo

import redis.asyncio as redis

DEVICE_ID_MAX_LENGTH = 128


@dataclass
class UsageRecord:
    date: str  # YYYY-MM-DD in the ledger's timezone
    count: int


class UsageStore(Protocol):
    async def get(self, device_id: str) -> UsageRecord | None: ...

    async def put(
        self, device_id: str, record: UsageRecord, expires_at: datetime
    ) -> None: ...

    async def increment(
        self, device_id: str, date: str, expires_at: datetime
    ) -> int: ...


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Return the configured zone, or ``None`` for the server's local time."""
    return ZoneInfo(name) if name else None


def day_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def next_midnight(now: datetime) -> datetime:
    tomorrow = (now + timedelta(days=1)).date()
    return datetime.combine(tomorrow, datetime.min.time(), tzinfo=now.tzinfo)


class InMemoryUsageStore:
    """Process-local store; expired records are dropped on every write."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._records: dict[str, tuple[UsageRecord, datetime]] = {}
        self._clock = clock or (lambda: datetime.now().astimezone())

    def __len__(self) -> int:
        return len(self._records)

    def _prune(self) -> None:
        now = self._clock()
        expired = [k for k, (_, exp) in self._records.items() if exp <= now]
        for key in expired:
            del self._records[key]

    async def get(self, device_id: str) -> UsageRecord | None:
        entry = self._records.get(device_id)
        if entry is None:
            return None
        record, expires_at = entry
        if expires_at <= self._clock():
            return None
        return UsageRecord(record.date, record.count)

    async def put(
        self, device_id: str, record: UsageRecord, expires_at: datetime
    ) -> None:
        self._prune()
        self._records[device_id] = (UsageRecord(record.date, record.count), expires_at)

    async def increment(
        self, device_id: str, date: str, expires_at: datetime
    ) -> int:
        entry = self._records.get(device_id)
        if entry is None or entry[1] <= self._clock():
            record = UsageRecord(date, 0)
        else:
            record = entry[0]
        record.count += 1
        self._records[device_id] = (record, expires_at)
        return record.count


class RedisUsageStore:
    """Shared store: one hash per device with ``EXPIREAT`` at local midnight."""

    def __init__(self, client: redis.Redis, prefix: str = "usage:device:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisUsageStore":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    def _key(self, device_id: str) -> str:
        return f"{self._prefix}{device_id}"

    async def get(self, device_id: str) -> UsageRecord | None:
        data = await self._client.hgetall(self._key(device_id))
        if not data or "date" not in data:
            return None
        return UsageRecord(date=data["date"], count=int(data.get("count", 0)))

    async def put(
        self, device_id: str, record: UsageRecord, expires_at: datetime
    ) -> None:
        key = self._key(device_id)
        pipe = self._client.pipeline()
        pipe.hset(key, mapping={"date": record.date, "count": record.count})
        pipe.expireat(key, int(expires_at.timestamp()))
        await pipe.execute()

    async def increment(
        self, device_id: str, date: str, expires_at: datetime
    ) -> int:
        key = self._key(device_id)
        pipe = self._client.pipeline()
        pipe.hsetnx(key, "date", date)
        pipe.hincrby(key, "count", 1)
        pipe.expireat(key, int(expires_at.timestamp()))
        _, count, _ = await pipe.execute()
        return int(count)


class UsageLedger:
    """Bounds the number of free estimate calls per device per calendar day."""

    def __init__(
        self,
        store: UsageStore,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._tz = tz
        self._clock = clock

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        if self._tz is not None:
            return datetime.now(self._tz)
        return datetime.now().astimezone()

    async def try_consume(self, device_id: str, limit: int) -> bool:
        """Count one call for ``device_id``; ``False`` once ``limit`` is used up today."""
        now = self.now()
        today = day_key(now)
        expires_at = next_midnight(now)
        current = await self.store.get(device_id)
        if current is None or current.date != today:
            await self.store.put(device_id, UsageRecord(today, 1), expires_at)
            return True
        if current.count >= limit:
            return False
        await self.store.increment(device_id, today, expires_at)
        return True

    async def used_today(self, device_id: str) -> int:
        current = await self.store.get(device_id)
        if current is None or current.date != day_key(self.now()):
            return 0
        return current.count

    async def remaining(self, device_id: str, limit: int) -> int:
        return max(0, limit - await self.used_today(device_id))


def normalize_device_id(raw: str | None) -> str:
    return (raw or "")[:DEVICE_ID_MAX_LENGTH]


def build_usage_store(backend: str, redis_url: str) -> UsageStore:
    if backend == "redis":
        return RedisUsageStore.from_url(redis_url)
    if backend == "memory":
        return InMemoryUsageStore()
    raise ValueError(f"Unknown usage store backend: {backend}")


__all__ = [
    "DEVICE_ID_MAX_LENGTH",
    "UsageRecord",
    "UsageStore",
    "InMemoryUsageStore",
    "RedisUsageStore",
    "UsageLedger",
    "build_usage_store",
    "day_key",
    "next_midnight",
    "normalize_device_id",
    "resolve_timezone",
]
