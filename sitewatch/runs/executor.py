"""Run executor — drives one end-to-end run of the registered checks.

Checks run strictly one after another in registry order. A critical FAIL
stops the run early when ``monitoring.stop_on_critical_failure`` is set.
Once the loop ends the run is summarised, saved to the result store (or to
a fallback JSON report when the store is down) and handed to the alerter.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from ..checks.base import Check, CheckResult, CheckStatus
from ..checks.registry import CheckRegistry
from ..config import Settings
from ..notifications import NotificationManager
from ..store.results import ResultStore
from .models import ProgressStatus, Run
from .progress import ProgressTracker
from .reports import write_report

logger = logging.getLogger(__name__)

_ICONS = {CheckStatus.PASS: "✅", CheckStatus.FAIL: "❌", CheckStatus.SKIP: "⏭️"}


@dataclass
class RunOutcome:
    """What happened to one run, whatever its terminal state."""

    status: ProgressStatus
    run: Run | None = None
    results: list[CheckResult] = field(default_factory=list)
    persisted: bool = False
    error: str | None = None


def progress_percent(completed: int, total: int) -> int:
    """Share of checks already finished, rounded half up."""
    if total <= 0:
        return 0
    return int(100 * completed / total + 0.5)


class RunExecutor:
    def __init__(
        self,
        registry: CheckRegistry,
        store: ResultStore,
        settings: Settings,
        tracker: ProgressTracker | None = None,
        notifier: NotificationManager | None = None,
        check_logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings
        self.tracker = tracker
        self.notifier = notifier
        self.check_logger = check_logger or logging.getLogger("sitewatch.checks")
        self._sessions = asyncio.Semaphore(max(1, settings.monitoring.max_concurrent_runs))

    def prepare(self) -> list[Check]:
        """Instantiate enabled checks. Raises CheckRegistryError on a broken factory."""
        return self.registry.get_checks(self.settings, self.check_logger)

    async def execute(
        self,
        checks: list[Check] | None = None,
        triggered_by: str = "scheduled",
        progress_id: str | None = None,
        cancel_token: threading.Event | None = None,
    ) -> RunOutcome:
        """Run every check, then persist, report and alert.

        ``progress_id`` links the run to a tracker entry; ``cancel_token`` is
        polled after each check returns.
        """
        async with self._sessions:
            return await self._execute(checks, triggered_by, progress_id, cancel_token)

    async def _execute(
        self,
        checks: list[Check] | None,
        triggered_by: str,
        progress_id: str | None,
        cancel_token: threading.Event | None,
    ) -> RunOutcome:
        started = time.monotonic()
        results: list[CheckResult] = []

        def cancelled() -> bool:
            return cancel_token is not None and cancel_token.is_set()

        try:
            if checks is None:
                checks = self.prepare()
            total = len(checks)
            logger.info("Starting %s run with %d checks", triggered_by, total)

            for completed, check in enumerate(checks):
                if cancelled():
                    break
                self._update(progress_id, current_test=check.name,
                             progress=progress_percent(completed, total))
                logger.info("Running check: %s", check.name)

                result = await check.run()
                results.append(result)
                logger.info("%s %s: %s", _ICONS.get(result.status, "?"), result.name, result.details)

                if result.is_critical_failure and self.settings.monitoring.stop_on_critical_failure:
                    logger.error("Critical check failed, stopping run: %s", result.name)
                    break
        except Exception as e:
            logger.exception("Fatal error during %s run", triggered_by)
            if progress_id and self.tracker is not None:
                self.tracker.fail(progress_id, str(e))
            return RunOutcome(ProgressStatus.FAILED, results=results, error=str(e))

        # Cancels are refused once saving has started
        if cancelled() or not self._begin_finalize(progress_id):
            logger.info(
                "Run %s cancelled after %d check(s), partial results discarded",
                progress_id, len(results),
            )
            return RunOutcome(ProgressStatus.CANCELLED, results=results)

        run = Run.from_results(
            results,
            triggered_by=triggered_by,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Run finished: %d passed, %d failed, %d total (%.2f%%)",
            run.passed_tests, run.failed_tests, run.total_tests, run.success_rate,
        )

        persisted = await self._persist(run)
        await self._alert(run)

        if progress_id and self.tracker is not None:
            snapshot = run.to_dict()
            snapshot["summary"] = run.summary.to_dict()
            snapshot["persisted"] = persisted
            self.tracker.complete(progress_id, snapshot)

        return RunOutcome(ProgressStatus.COMPLETED, run=run, results=results, persisted=persisted)

    def _update(self, progress_id: str | None, **fields: Any) -> None:
        if progress_id and self.tracker is not None:
            self.tracker.update(progress_id, **fields)

    def _begin_finalize(self, progress_id: str | None) -> bool:
        if progress_id and self.tracker is not None:
            return self.tracker.begin_finalize(progress_id)
        return True

    async def _persist(self, run: Run) -> bool:
        loop = asyncio.get_running_loop()
        try:
            run.id = await loop.run_in_executor(None, self.store.save_complete_run, run)
        except Exception as e:
            logger.exception("Failed to save run to database")
            write_report(run, self.settings.paths.reports, extra={"database_error": str(e)})
            return False

        logger.info("Run saved to database with ID: %s", run.id)
        write_report(run, self.settings.paths.reports)
        return True

    async def _alert(self, run: Run) -> None:
        if self.notifier is None or not self.notifier.should_alert(run):
            return
        try:
            await self.notifier.notify_run_result(run)
        except Exception:
            logger.exception("Failed to send run alert")
