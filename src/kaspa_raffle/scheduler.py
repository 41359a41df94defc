"""
Raffle completion scheduler
Fires one completion-and-dispersal pass per interval, never two at once
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .engine import CompletionEngine

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(self, engine: CompletionEngine, interval_s: float = 60.0) -> None:
        self.engine = engine
        self.interval_s = interval_s
        self._guard = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._guard.locked()

    async def tick(self) -> bool:
        """
        Run one pass unless one is already in flight.

        Returns:
            bool: False when the tick was skipped because a pass is running
        """
        if self._guard.locked():
            logger.warning("Previous raffle pass still running; skipping this tick")
            return False

        async with self._guard:
            logger.info("Running raffle completion scheduler...")
            try:
                summary = await self.engine.run_pass()
                logger.info("Raffle pass finished: %s", summary)
            except Exception:
                # A failed pass must never stop the loop.
                logger.exception("Error in completing raffles")
        return True

    def fire(self) -> asyncio.Task:
        task = asyncio.create_task(self.tick())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info("Raffle completion scheduler started (every %.0fs).", self.interval_s)
        try:
            while not stop_event.is_set():
                self.fire()
                try:
                    await asyncio.wait_for(stop_event.wait(), self.interval_s)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._tasks:
                logger.info("Waiting for in-flight raffle pass to finish...")
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Raffle completion scheduler stopped.")
