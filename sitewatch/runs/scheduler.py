"""Run scheduler — fires a scheduled run every ``check_interval_hours``.

A plain asyncio loop: sleep, run, sweep, repeat. The retention sweep also
runs once at start-up when ``cleanup.run_on_startup`` is set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from .service import MonitorService

logger = logging.getLogger(__name__)


def format_duration(ms: float) -> str:
    """``5_400_000 -> '1 hour 30m'``; anything under a minute is ``'0m'``."""
    total_minutes = int(ms // 60000) if ms > 0 else 0
    hours, minutes = divmod(total_minutes, 60)
    parts = []
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts) or "0m"


def _parse_timestamp(value: str) -> float | None:
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class RunScheduler:
    """Periodic scheduled runs on top of a :class:`MonitorService`."""

    def __init__(
        self,
        service: MonitorService,
        run_immediately: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.service = service
        self.run_immediately = run_immediately
        self._clock = clock
        self._started_at = clock()
        self._next_run_at: float | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def interval_seconds(self) -> float:
        return self.service.settings.monitoring.check_interval_hours * 60 * 60

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._started_at = self._clock()

        cleanup = self.service.settings.monitoring.cleanup
        if cleanup.enabled and cleanup.run_on_startup:
            await self._sweep()

        self._task = asyncio.create_task(self._loop(), name="scheduled-runs")
        logger.info(
            "Run scheduler started: every %s",
            format_duration(self.interval_seconds * 1000),
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._next_run_at = None
        logger.info("Run scheduler stopped")

    def next_run_in(self, last_run_timestamp: str | None = None) -> int:
        """Milliseconds until the next scheduled run, never negative."""
        now = self._clock()
        interval = self.interval_seconds
        if self._next_run_at is not None:
            remaining = self._next_run_at - now
        else:
            last = _parse_timestamp(last_run_timestamp) if last_run_timestamp else None
            # A last run stamped in the future (clock skew) is ignored
            if last is not None and now - interval < last <= now:
                remaining = last + interval - now
            else:
                # Nothing recent on record: count from process start
                remaining = interval - (now - self._started_at)
        return max(0, int(min(remaining, interval) * 1000))

    async def _loop(self) -> None:
        first = True
        while True:
            try:
                if not (first and self.run_immediately):
                    self._next_run_at = self._clock() + self.interval_seconds
                    await asyncio.sleep(self.interval_seconds)
                first = False
                self._next_run_at = None

                outcome = await self.service.run_scheduled()
                logger.info("Scheduled run finished: %s", outcome.status.value)
                if self.service.settings.monitoring.cleanup.enabled:
                    await self._sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Scheduled run error")
                await asyncio.sleep(min(self.interval_seconds, 60))

    async def _sweep(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.service.run_cleanup_now)
        except Exception:
            logger.exception("Retention sweep failed")
