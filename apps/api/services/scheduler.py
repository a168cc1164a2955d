"""Periodic access-ledger housekeeping owned by the application lifespan."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from services.access_ledger import AccessLedger

logger = logging.getLogger(__name__)


class LedgerCleanupTicker:
    def __init__(self, ledger: AccessLedger, interval_seconds: float) -> None:
        self.ledger = ledger
        self.interval_seconds = float(interval_seconds)
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = await self.ledger.cleanup()
        self.ticks += 1
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as exc:
                logger.warning("Access ledger cleanup tick failed: %s", exc)

    def start(self) -> bool:
        """Start the loop. A non-positive interval disables it."""
        if self.interval_seconds <= 0 or self.running:
            return False
        self._task = asyncio.create_task(self._loop())
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
