"""Shared per-second deadline tick for every open session.

One APScheduler interval job recomputes the remaining payment time of all
pending trades from absolute expiry timestamps, so countdowns never drift.
"""

import logging
import time
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradeflow.config import settings

logger = logging.getLogger(__name__)

TICK_JOB_ID = "deadline_tick"

TickCallback = Callable[[int], None]


def time_remaining(expires_at: int, now: float) -> int:
    """Seconds left until expires_at, never negative."""
    return max(0, int(expires_at) - int(now))


class DeadlineTimer:
    """Fans a single scheduler tick out to registered sessions."""

    def __init__(self, clock: Callable[[], float] = time.time, interval_seconds: int | None = None):
        self.clock = clock
        self.interval_seconds = interval_seconds or settings.deadline_tick_seconds
        self._callbacks: dict[str, TickCallback] = {}
        self._scheduler: AsyncIOScheduler | None = None

    def register(self, key: str, callback: TickCallback):
        self._callbacks[key] = callback

    def unregister(self, key: str):
        self._callbacks.pop(key, None)

    def tick(self):
        """Run one tick; every callback sees the same wall-clock second."""
        now = int(self.clock())
        for key, callback in list(self._callbacks.items()):
            try:
                callback(now)
            except Exception as e:
                logger.error(f"Deadline tick failed for {key}: {e}", exc_info=True)

    async def _tick_job(self):
        # Must stay a coroutine so the tick runs on the event loop thread
        self.tick()

    def start(self):
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=TICK_JOB_ID,
            name="Deadline tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Deadline timer started (every {self.interval_seconds}s)")

    def stop(self):
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Deadline timer stopped")

    def status(self) -> dict:
        """Return current timer state for the API."""
        job = self._scheduler.get_job(TICK_JOB_ID) if self._scheduler else None
        return {
            "running": bool(self._scheduler and self._scheduler.running),
            "interval_seconds": self.interval_seconds,
            "sessions": len(self._callbacks),
            "next_run": str(job.next_run_time) if job and job.next_run_time else None,
        }


timer = DeadlineTimer()
