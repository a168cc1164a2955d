"""Per-identity free-tier cooldowns and anonymous credit balances."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from services.ledger_store import InMemoryLedgerStore, LedgerStore, RedisLedgerStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FreeUseCheck:
    allowed: bool
    retry_after_minutes: Optional[int] = None


@dataclass(frozen=True)
class FreeUseStats:
    free_generation_count: int
    last_free_generation_at: Optional[datetime]


class AccessLedger:
    """Free-use cooldown tracking and credit balances for identities without an account."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        cooldown: timedelta = timedelta(hours=3),
        free_idle: timedelta = timedelta(hours=24),
        credit_idle: timedelta = timedelta(days=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self.cooldown = cooldown
        # An entry still inside its cooldown must survive the sweep.
        self._free_idle = max(free_idle, cooldown)
        self._credit_idle = credit_idle
        self._clock = clock or _utc_now

    @property
    def store(self) -> LedgerStore:
        return self._store

    async def can_use_free(self, identity: str) -> FreeUseCheck:
        entry = await self._store.get_free_entry(identity)
        if entry is None:
            return FreeUseCheck(allowed=True)

        elapsed = self._clock() - entry.last_free_generation_at
        if elapsed >= self.cooldown:
            return FreeUseCheck(allowed=True)

        remaining_seconds = (self.cooldown - elapsed).total_seconds()
        return FreeUseCheck(allowed=False, retry_after_minutes=max(math.ceil(remaining_seconds / 60), 1))

    async def record_free_use(self, identity: str) -> None:
        entry = await self._store.record_free_use(identity, self._clock())
        logger.info("Recorded free generation for %s (total=%s)", identity, entry.free_generation_count)

    async def get_stats(self, identity: str) -> FreeUseStats:
        entry = await self._store.get_free_entry(identity)
        if entry is None:
            return FreeUseStats(free_generation_count=0, last_free_generation_at=None)
        return FreeUseStats(
            free_generation_count=entry.free_generation_count,
            last_free_generation_at=entry.last_free_generation_at,
        )

    async def get_credits(self, identity: str) -> int:
        entry = await self._store.get_credit_entry(identity)
        return entry.credits if entry else 0

    async def add_credits(self, identity: str, amount: int) -> int:
        if int(amount) <= 0:
            raise ValueError("amount must be greater than 0")
        balance = await self._store.add_credits(identity, int(amount), self._clock())
        logger.info("Added %s credits to %s. New balance: %s", amount, identity, balance)
        return balance

    async def deduct_credit(self, identity: str, amount: int = 1) -> bool:
        balance = await self._store.deduct_credits(identity, int(amount), self._clock())
        if balance is None:
            logger.info("Insufficient credits for %s (needs %s)", identity, amount)
            return False
        logger.info("Deducted %s credit(s) from %s. Remaining: %s", amount, identity, balance)
        return True

    async def cleanup(self) -> int:
        removed = await self._store.sweep(
            self._clock(),
            free_idle=self._free_idle,
            credit_idle=self._credit_idle,
        )
        if removed:
            logger.info("Access ledger cleanup removed %s idle entries", removed)
        return removed

    async def close(self) -> None:
        await self._store.close()


def build_access_ledger(settings) -> AccessLedger:
    """Build the ledger for the configured backend."""
    cooldown = timedelta(hours=float(settings.FREE_COOLDOWN_HOURS))
    free_idle = max(timedelta(hours=float(settings.FREE_ENTRY_IDLE_HOURS)), cooldown)
    credit_idle = timedelta(days=int(settings.CREDIT_ENTRY_IDLE_DAYS))

    backend = str(settings.LEDGER_BACKEND or "memory").strip().lower()
    if backend == "redis":
        store: LedgerStore = RedisLedgerStore.from_url(
            settings.REDIS_URL,
            free_idle=free_idle,
            credit_idle=credit_idle,
        )
    elif backend == "memory":
        store = InMemoryLedgerStore()
    else:
        raise ValueError(f"Unknown LEDGER_BACKEND: {settings.LEDGER_BACKEND}")

    return AccessLedger(store, cooldown=cooldown, free_idle=free_idle, credit_idle=credit_idle)
