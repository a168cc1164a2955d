import asyncio

import pytest

from services.access_ledger import AccessLedger
from services.ledger_store import InMemoryLedgerStore
from services.scheduler import LedgerCleanupTicker


class FlakyLedger:
    def __init__(self):
        self.calls = 0

    async def cleanup(self) -> int:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("redis offline")
        return 0


@pytest.mark.asyncio
async def test_run_once_sweeps_idle_entries(clock):
    ledger = AccessLedger(InMemoryLedgerStore(), clock=clock)
    await ledger.record_free_use("ip:idle")
    clock.advance(hours=25)

    ticker = LedgerCleanupTicker(ledger, interval_seconds=60)

    assert await ticker.run_once() == 1
    assert ticker.ticks == 1


@pytest.mark.asyncio
async def test_loop_survives_failing_sweep_and_stops_cleanly():
    ledger = FlakyLedger()
    ticker = LedgerCleanupTicker(ledger, interval_seconds=0.01)

    assert ticker.start() is True
    assert ticker.start() is False
    for _ in range(100):
        if ledger.calls >= 3:
            break
        await asyncio.sleep(0.01)

    assert ledger.calls >= 3
    assert ticker.running
    await ticker.stop()
    assert not ticker.running
    await ticker.stop()


@pytest.mark.asyncio
async def test_non_positive_interval_disables_loop():
    ticker = LedgerCleanupTicker(FlakyLedger(), interval_seconds=0)
    assert ticker.start() is False
    assert not ticker.running
    await ticker.stop()
