"""
Scheduler loop for reminder runs.

Purpose:
- Trigger Dispatcher.run_once(today) on a fixed cadence (daily at a UTC hour,
  or every N seconds)
- Never run two dispatcher runs at once: a tick that arrives while a run is
  in flight is skipped, not queued
- Compute `today` once per run from the injected clock
- Survive failed runs: errors are logged and the next tick still fires

Shutdown: stop() lets the in-flight run finish the work units it already
started, then no further runs are triggered.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from core.exceptions import RunInProgressError
from models.notification import RunReport
from services.clock import Clock
from services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class Cadence(Protocol):
    def seconds_until_next(self, now: datetime) -> float: ...


class DailyCadence:
    """Once a day at hour:minute UTC (the original cron was '0 0 * * *')."""

    def __init__(self, hour: int = 0, minute: int = 0):
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid run time {hour:02d}:{minute:02d}")
        self.hour = hour
        self.minute = minute

    def seconds_until_next(self, now: datetime) -> float:
        now_utc = now.astimezone(timezone.utc)
        target = now_utc.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if target <= now_utc:
            target += timedelta(days=1)
        return (target - now_utc).total_seconds()


class IntervalCadence:
    def __init__(self, seconds: float):
        if seconds <= 0:
            raise ValueError("Interval must be positive")
        self.seconds = seconds

    def seconds_until_next(self, now: datetime) -> float:
        return self.seconds


class SchedulerLoop:
    def __init__(self, dispatcher: Dispatcher, clock: Clock, cadence: Cadence):
        self.dispatcher = dispatcher
        self.clock = clock
        self.cadence = cadence
        self.runs = 0
        self.skipped = 0
        self.failed = 0
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._inflight: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def trigger(self) -> Optional[RunReport]:
        """
        Run the dispatcher once unless a run is already in flight.
        Returns the report, or None when skipped or failed.
        """
        try:
            return await self.run_now()
        except RunInProgressError:
            self.skipped += 1
            logger.info("Reminder run already in progress; skipping this trigger")
            return None
        except Exception as e:
            self.failed += 1
            logger.exception("Reminder run failed: %s", e)
            return None

    async def run_now(self) -> RunReport:
        """Like trigger(), but raises RunInProgressError / run errors to the caller."""
        if self._lock.locked():
            raise RunInProgressError("a reminder run is already in progress")
        async with self._lock:
            today = self.clock.today()
            self.runs += 1
            return await self.dispatcher.run_once(today, stop_event=self._stop)

    async def run_forever(self) -> None:
        logger.info("Scheduler loop started")
        while not self._stop.is_set():
            delay = self.cadence.seconds_until_next(self.clock.now())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            if self._inflight is not None and not self._inflight.done():
                self.skipped += 1
                logger.warning("Previous reminder run still in flight; skipping tick")
                continue
            self._inflight = asyncio.create_task(self.trigger())

        if self._inflight is not None and not self._inflight.done():
            logger.info("Waiting for in-flight reminder run to finish")
            await self._inflight
        logger.info("Scheduler loop stopped (runs=%d skipped=%d failed=%d)", self.runs, self.skipped, self.failed)

    def stop(self) -> None:
        self._stop.set()
