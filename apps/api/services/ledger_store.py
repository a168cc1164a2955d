"""Storage backends for the access ledger (free-use cooldowns and anonymous credits)."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import redis.asyncio as redis


@dataclass(frozen=True)
class FreeUseEntry:
    last_free_generation_at: datetime
    free_generation_count: int


@dataclass(frozen=True)
class CreditEntry:
    credits: int
    last_updated: datetime


class LedgerStore(ABC):
    """Key-value contract shared by the in-memory and Redis ledgers."""

    @abstractmethod
    async def get_free_entry(self, key: str) -> Optional[FreeUseEntry]:
        raise NotImplementedError

    @abstractmethod
    async def record_free_use(self, key: str, at: datetime) -> FreeUseEntry:
        raise NotImplementedError

    @abstractmethod
    async def get_credit_entry(self, key: str) -> Optional[CreditEntry]:
        raise NotImplementedError

    @abstractmethod
    async def add_credits(self, key: str, amount: int, at: datetime) -> int:
        raise NotImplementedError

    @abstractmethod
    async def deduct_credits(self, key: str, amount: int, at: datetime) -> Optional[int]:
        """Return the new balance, or None without mutating when the balance is short."""
        raise NotImplementedError

    @abstractmethod
    async def sweep(
        self,
        now: datetime,
        *,
        free_idle: timedelta,
        credit_idle: timedelta,
    ) -> int:
        """Drop idle entries and return how many were removed."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger. A single lock serializes every mutation."""

    def __init__(self) -> None:
        self._free: Dict[str, FreeUseEntry] = {}
        self._credits: Dict[str, CreditEntry] = {}
        self._lock = asyncio.Lock()

    async def get_free_entry(self, key: str) -> Optional[FreeUseEntry]:
        return self._free.get(key)

    async def record_free_use(self, key: str, at: datetime) -> FreeUseEntry:
        async with self._lock:
            entry = self._free.get(key)
            if entry is None:
                entry = FreeUseEntry(last_free_generation_at=at, free_generation_count=1)
            else:
                entry = FreeUseEntry(
                    last_free_generation_at=max(entry.last_free_generation_at, at),
                    free_generation_count=entry.free_generation_count + 1,
                )
            self._free[key] = entry
            return entry

    async def get_credit_entry(self, key: str) -> Optional[CreditEntry]:
        return self._credits.get(key)

    async def add_credits(self, key: str, amount: int, at: datetime) -> int:
        async with self._lock:
            entry = self._credits.get(key)
            balance = (entry.credits if entry else 0) + amount
            self._credits[key] = CreditEntry(credits=balance, last_updated=at)
            return balance

    async def deduct_credits(self, key: str, amount: int, at: datetime) -> Optional[int]:
        async with self._lock:
            entry = self._credits.get(key)
            if entry is None or entry.credits < amount:
                return None
            entry = replace(entry, credits=entry.credits - amount, last_updated=at)
            self._credits[key] = entry
            return entry.credits

    async def sweep(
        self,
        now: datetime,
        *,
        free_idle: timedelta,
        credit_idle: timedelta,
    ) -> int:
        removed = 0
        async with self._lock:
            for key, entry in list(self._free.items()):
                if now - entry.last_free_generation_at >= free_idle:
                    del self._free[key]
                    removed += 1
            for key, entry in list(self._credits.items()):
                if entry.credits == 0 and now - entry.last_updated >= credit_idle:
                    del self._credits[key]
                    removed += 1
        return removed


# Decrements only when the balance covers the amount; arms the idle TTL once the
# balance reaches zero so Redis performs the 30-day sweep itself.
_DEDUCT_SCRIPT = """
local balance = tonumber(redis.call('HGET', KEYS[1], 'credits') or '0')
local amount = tonumber(ARGV[1])
if balance < amount then
  return -1
end
balance = redis.call('HINCRBY', KEYS[1], 'credits', -amount)
redis.call('HSET', KEYS[1], 'last_updated', ARGV[2])
if balance == 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[3])
end
return balance
"""

_RECORD_FREE_SCRIPT = """
local previous = tonumber(redis.call('HGET', KEYS[1], 'last_at') or '0')
local at = tonumber(ARGV[1])
if at > previous then
  redis.call('HSET', KEYS[1], 'last_at', ARGV[1])
end
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
redis.call('EXPIRE', KEYS[1], ARGV[2])
return {tostring(math.max(at, previous)), count}
"""


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisLedgerStore(LedgerStore):
    """Redis-backed ledger shared across API instances.

    Idle entries expire through key TTLs, so ``sweep`` has nothing to do.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = "dogtalk:ledger",
        free_idle: timedelta = timedelta(hours=24),
        credit_idle: timedelta = timedelta(days=30),
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._free_ttl = max(int(free_idle.total_seconds()), 1)
        self._credit_ttl = max(int(credit_idle.total_seconds()), 1)
        self._deduct = client.register_script(_DEDUCT_SCRIPT)
        self._record_free = client.register_script(_RECORD_FREE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLedgerStore":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _free_key(self, key: str) -> str:
        return f"{self._prefix}:free:{key}"

    def _credit_key(self, key: str) -> str:
        return f"{self._prefix}:credits:{key}"

    async def get_free_entry(self, key: str) -> Optional[FreeUseEntry]:
        data = await self._client.hgetall(self._free_key(key))
        if not data or "last_at" not in data:
            return None
        return FreeUseEntry(
            last_free_generation_at=_from_timestamp(data["last_at"]),
            free_generation_count=int(data.get("count", 0)),
        )

    async def record_free_use(self, key: str, at: datetime) -> FreeUseEntry:
        last_at, count = await self._record_free(
            keys=[self._free_key(key)],
            args=[repr(at.timestamp()), self._free_ttl],
        )
        return FreeUseEntry(last_free_generation_at=_from_timestamp(last_at), free_generation_count=int(count))

    async def get_credit_entry(self, key: str) -> Optional[CreditEntry]:
        data = await self._client.hgetall(self._credit_key(key))
        if not data or "credits" not in data:
            return None
        return CreditEntry(
            credits=int(data["credits"]),
            last_updated=_from_timestamp(data.get("last_updated", 0)),
        )

    async def add_credits(self, key: str, amount: int, at: datetime) -> int:
        redis_key = self._credit_key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hincrby(redis_key, "credits", amount)
            pipe.hset(redis_key, "last_updated", repr(at.timestamp()))
            pipe.persist(redis_key)
            balance, _, _ = await pipe.execute()
        return int(balance)

    async def deduct_credits(self, key: str, amount: int, at: datetime) -> Optional[int]:
        balance = await self._deduct(
            keys=[self._credit_key(key)],
            args=[amount, repr(at.timestamp()), self._credit_ttl],
        )
        balance = int(balance)
        return None if balance < 0 else balance

    async def sweep(
        self,
        now: datetime,
        *,
        free_idle: timedelta,
        credit_idle: timedelta,
    ) -> int:
        return 0

    async def close(self) -> None:
        await self._client.aclose()
