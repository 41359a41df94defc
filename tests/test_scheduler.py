import asyncio

import pytest

from kaspa_raffle.engine import PassSummary
from kaspa_raffle.scheduler import Scheduler


class SlowEngine:
    """run_pass blocks until `release` is set."""

    def __init__(self, fail=False):
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.passes = 0
        self.fail = fail

    async def run_pass(self):
        self.passes += 1
        self.started.set()
        await self.release.wait()
        if self.fail:
            raise RuntimeError("store offline")
        return PassSummary(completed=1)


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped():
    engine = SlowEngine()
    scheduler = Scheduler(engine, interval_s=60)

    first = scheduler.fire()
    await engine.started.wait()
    assert scheduler.running

    assert await scheduler.tick() is False
    assert engine.passes == 1

    engine.release.set()
    assert await first is True
    assert not scheduler.running


@pytest.mark.asyncio
async def test_failed_pass_releases_the_guard():
    engine = SlowEngine(fail=True)
    engine.release.set()
    scheduler = Scheduler(engine, interval_s=60)

    assert await scheduler.tick() is True
    assert not scheduler.running
    assert await scheduler.tick() is True
    assert engine.passes == 2


@pytest.mark.asyncio
async def test_run_fires_until_stopped_and_waits_for_pass():
    engine = SlowEngine()
    engine.release.set()
    scheduler = Scheduler(engine, interval_s=0.01)
    stop = asyncio.Event()

    runner = asyncio.create_task(scheduler.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(runner, 1)

    assert engine.passes >= 2
    assert not scheduler.running
