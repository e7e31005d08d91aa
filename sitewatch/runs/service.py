"""Monitor service — the single object the API and CLI talk to.

Owns the registry, the progress table, the result store and the sweeper,
all constructed explicitly and injected; nothing here is process-global.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..checks.registry import CheckRegistry
from ..config import Settings
from ..notifications import NotificationManager
from ..retention import RetentionSweeper, SweepResult
from ..store.results import Incident, ResultStore, UptimeStat
from .executor import RunExecutor, RunOutcome
from .models import CancelOutcome, ProgressEntry, Run
from .progress import EVICTION_DELAY_SECONDS, ProgressTracker

logger = logging.getLogger(__name__)


class MonitorService:
    def __init__(
        self,
        settings: Settings,
        registry: CheckRegistry,
        store: ResultStore,
        tracker: ProgressTracker | None = None,
        notifier: NotificationManager | None = None,
        sweeper: RetentionSweeper | None = None,
        eviction_delay: float = EVICTION_DELAY_SECONDS,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.store = store
        self.tracker = tracker or ProgressTracker()
        self.notifier = notifier
        self.sweeper = sweeper or RetentionSweeper(
            settings.monitoring.cleanup, settings.paths,
        )
        self.executor = RunExecutor(
            registry, store, settings, tracker=self.tracker, notifier=notifier,
        )
        self.eviction_delay = eviction_delay
        self._tasks: set[asyncio.Task[RunOutcome]] = set()

    # -- runs -----------------------------------------------------------------

    def start_manual_run(self, triggered_by: str = "manual") -> str:
        """Kick off a run in the background and return its progress id at once.

        Must be called from within the event loop. Check construction happens
        here, so a broken check factory raises ``CheckRegistryError`` to the
        caller instead of surfacing later through polling.
        """
        self.tracker.sweep_expired()
        checks = self.executor.prepare()

        entry = self.tracker.start(triggered_by=triggered_by)
        token = self.tracker.cancel_token(entry.id)
        logger.info("Manual run %s requested by %s", entry.id, triggered_by)

        task = asyncio.get_running_loop().create_task(
            self.executor.execute(
                checks,
                triggered_by=triggered_by,
                progress_id=entry.id,
                cancel_token=token,
            ),
            name=f"run-{entry.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(lambda t, run_id=entry.id: self._on_run_done(run_id, t))
        return entry.id

    def _on_run_done(self, run_id: str, task: asyncio.Task[RunOutcome]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Run %s crashed: %s", run_id, task.exception())
            self.tracker.fail(run_id, str(task.exception()))
        self.tracker.schedule_eviction(run_id, self.eviction_delay)

    async def run_scheduled(self, triggered_by: str = "scheduled") -> RunOutcome:
        """Run inline with the caller (scheduler / CLI), no progress entry."""
        return await self.executor.execute(triggered_by=triggered_by)

    async def wait_idle(self) -> None:
        """Wait for every background run started by this service."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_progress(self, run_id: str) -> ProgressEntry | None:
        return self.tracker.get(run_id)

    def estimate_remaining(self, entry: ProgressEntry) -> int | None:
        return self.tracker.estimate_remaining(entry)

    def cancel_run(self, run_id: str, requester: str = "unknown") -> CancelOutcome:
        return self.tracker.cancel(run_id, requester)

    def list_checks(self) -> list[dict[str, Any]]:
        return self.registry.to_dict()

    # -- history (result store pass-through) --------------------------------

    def get_recent_runs(self, limit: int = 50) -> list[Run]:
        return self.store.get_recent_runs(limit)

    def get_run_details(self, run_id: int) -> Run | None:
        return self.store.get_run_details(run_id)

    def search_runs(
        self,
        start_date: str | None = None,
        end_date: str | None = None,
        min_success_rate: float | None = None,
    ) -> list[Run]:
        return self.store.search_runs(start_date, end_date, min_success_rate)

    def get_uptime_stats(self, days: int = 30) -> list[UptimeStat]:
        return self.store.get_uptime_stats(days)

    def get_incidents(self, status: str | None = "open") -> list[Incident]:
        return self.store.get_incidents(status)

    def resolve_incident(
        self, incident_id: int, resolved_by: str | None = None, notes: str | None = None,
    ) -> bool:
        return self.store.resolve_incident(incident_id, resolved_by, notes)

    def get_current_status(self) -> dict[str, Any]:
        return self.store.get_current_status()

    def database_info(self) -> dict[str, Any]:
        return self.store.database_info()

    # -- retention ------------------------------------------------------------

    def run_cleanup_now(self) -> SweepResult:
        return self.sweeper.perform_cleanup()

    def get_disk_usage(self) -> dict[str, Any]:
        return self.sweeper.get_disk_usage()

    # -- shutdown -------------------------------------------------------------

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
        self.tracker.close()
