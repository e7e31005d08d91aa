"""Tests for the run executor: ordering, short-circuit, cancellation, fallbacks."""

from __future__ import annotations

import asyncio
import json
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from sitewatch.checks.base import CheckStatus
from sitewatch.checks.registry import CheckRegistry, CheckRegistryError
from sitewatch.notifications import NotificationManager
from sitewatch.runs.executor import RunExecutor, progress_percent
from sitewatch.runs.models import CancelOutcome, ProgressStatus
from sitewatch.store.results import ResultStore, ResultStoreError

from conftest import FakeCheck, make_settings, registry_of


def _executor(registry, store, settings, tracker=None, notifier=None) -> RunExecutor:
    return RunExecutor(registry, store, settings, tracker=tracker, notifier=notifier)


class TestProgressPercent:
    def test_rounding(self) -> None:
        assert progress_percent(0, 3) == 0
        assert progress_percent(1, 3) == 33
        assert progress_percent(2, 3) == 67
        assert progress_percent(1, 8) == 13

    def test_empty(self) -> None:
        assert progress_percent(0, 0) == 0


class TestShortCircuit:
    async def test_critical_failure_stops_run(self, settings, store: ResultStore) -> None:
        a = FakeCheck("A", CheckStatus.FAIL, critical=True)
        b, c = FakeCheck("B"), FakeCheck("C")
        executor = _executor(registry_of(a, b, c), store, settings)

        outcome = await executor.execute()

        assert outcome.status == ProgressStatus.COMPLETED
        assert [r.name for r in outcome.run.results] == ["A"]
        assert outcome.run.summary.to_dict() == {
            "total": 1, "passed": 0, "failed": 1, "skipped": 0, "success_rate": 0,
        }
        assert b.calls == 0 and c.calls == 0

        [incident] = store.get_incidents("open")
        assert incident.test_name == "A"
        saved = store.get_run_details(outcome.run.id)
        assert [r.name for r in saved.results] == ["A"]

    async def test_non_critical_failure_continues(self, settings, store: ResultStore) -> None:
        checks = [FakeCheck("A", CheckStatus.FAIL), FakeCheck("B"), FakeCheck("C")]
        outcome = await _executor(registry_of(*checks), store, settings).execute()

        assert [r.name for r in outcome.run.results] == ["A", "B", "C"]
        assert store.get_incidents("all") == []

    async def test_short_circuit_disabled(self, tmp_path, store: ResultStore) -> None:
        settings = make_settings(tmp_path, stop_on_critical_failure=False)
        checks = [FakeCheck("A", CheckStatus.FAIL, critical=True), FakeCheck("B")]
        outcome = await _executor(registry_of(*checks), store, settings).execute()

        assert [r.name for r in outcome.run.results] == ["A", "B"]

    async def test_critical_skip_does_not_stop(self, settings, store: ResultStore) -> None:
        checks = [FakeCheck("A", CheckStatus.SKIP, critical=True), FakeCheck("B")]
        outcome = await _executor(registry_of(*checks), store, settings).execute()

        assert [r.name for r in outcome.run.results] == ["A", "B"]


class TestExecution:
    async def test_results_follow_registry_order(self, settings, store: ResultStore) -> None:
        checks = [FakeCheck("third"), FakeCheck("first"), FakeCheck("second")]
        registry = registry_of(*checks, orders=[30, 10, 20])

        outcome = await _executor(registry, store, settings).execute()
        assert [r.name for r in outcome.run.results] == ["first", "second", "third"]

    async def test_progress_updates(self, settings, store: ResultStore, tracker) -> None:
        seen: list[tuple[str, int]] = []
        tracker.start("r1")

        def snapshot_progress():
            async def record() -> None:
                entry = tracker.get("r1")
                seen.append((entry.current_test, entry.progress))
            return record

        checks = [FakeCheck(n, before_return=snapshot_progress()) for n in ("A", "B", "C")]
        executor = _executor(registry_of(*checks), store, settings, tracker=tracker)
        await executor.execute(progress_id="r1", triggered_by="manual")

        assert seen == [("A", 0), ("B", 33), ("C", 67)]
        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.COMPLETED
        assert entry.progress == 100
        assert entry.results["summary"]["total"] == 3
        assert entry.results["persisted"] is True

    async def test_pass_pass_skip(self, settings, store: ResultStore, tracker) -> None:
        checks = [FakeCheck("A"), FakeCheck("B"), FakeCheck("C", CheckStatus.SKIP)]
        tracker.start("r1")
        outcome = await _executor(registry_of(*checks), store, settings, tracker=tracker).execute(
            progress_id="r1",
        )

        summary = outcome.run.summary
        assert (summary.total, summary.passed, summary.failed) == (3, 2, 0)
        assert tracker.get("r1").results["summary"]["success_rate"] == 66.67

    async def test_writes_report(self, settings, store: ResultStore) -> None:
        outcome = await _executor(registry_of(FakeCheck("A")), store, settings).execute()

        [report] = list(settings.paths.reports.glob("report-*.json"))
        assert report.name.startswith(f"report-{outcome.run.id}-")
        data = json.loads(report.read_text())
        assert data["summary"]["passed"] == 1
        assert data["results"][0]["name"] == "A"

    async def test_empty_registry(self, settings, store: ResultStore) -> None:
        outcome = await _executor(CheckRegistry(), store, settings).execute()
        assert outcome.status == ProgressStatus.COMPLETED
        assert outcome.run.total_tests == 0
        assert outcome.run.success_rate == 0


class TestFailures:
    async def test_check_exception_fails_run(self, settings, store: ResultStore, tracker) -> None:
        after = FakeCheck("B")
        checks = [FakeCheck("A", raises=RuntimeError("browser died")), after]
        tracker.start("r1")

        outcome = await _executor(registry_of(*checks), store, settings, tracker=tracker).execute(
            progress_id="r1",
        )

        assert outcome.status == ProgressStatus.FAILED
        assert "browser died" in outcome.error
        assert after.calls == 0
        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.FAILED
        assert entry.error == "browser died"
        assert store.get_recent_runs() == []

    async def test_registry_error_fails_run(self, settings, store: ResultStore) -> None:
        def broken(settings, logger):
            raise ValueError("nope")

        registry = CheckRegistry()
        registry.register(broken)
        executor = _executor(registry, store, settings)

        with pytest.raises(CheckRegistryError):
            executor.prepare()
        outcome = await executor.execute()
        assert outcome.status == ProgressStatus.FAILED

    async def test_store_failure_writes_fallback(self, settings, tracker) -> None:
        store = MagicMock(spec=ResultStore)
        store.save_complete_run.side_effect = ResultStoreError("database is locked")
        tracker.start("r1")

        outcome = await _executor(registry_of(FakeCheck("A")), store, settings, tracker=tracker).execute(
            progress_id="r1",
        )

        assert outcome.status == ProgressStatus.COMPLETED
        assert not outcome.persisted
        assert outcome.run.id is None

        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.COMPLETED
        assert entry.results["persisted"] is False

        [report] = list(settings.paths.reports.glob("report-*.json"))
        data = json.loads(report.read_text())
        assert data["database_error"] == "database is locked"
        assert data["results"][0]["name"] == "A"

    async def test_alert_failure_is_swallowed(self, settings, store: ResultStore) -> None:
        notifier = MagicMock(spec=NotificationManager)
        notifier.should_alert.return_value = True
        notifier.notify_run_result = AsyncMock(side_effect=RuntimeError("smtp down"))

        outcome = await _executor(
            registry_of(FakeCheck("A", CheckStatus.FAIL)), store, settings, notifier=notifier,
        ).execute()

        assert outcome.status == ProgressStatus.COMPLETED
        assert outcome.persisted
        notifier.notify_run_result.assert_awaited_once()

    async def test_alert_skipped_when_not_wanted(self, settings, store: ResultStore) -> None:
        notifier = MagicMock(spec=NotificationManager)
        notifier.should_alert.return_value = False
        notifier.notify_run_result = AsyncMock()

        await _executor(registry_of(FakeCheck("A")), store, settings, notifier=notifier).execute()
        notifier.notify_run_result.assert_not_awaited()


class TestCancellation:
    async def test_cancel_mid_check(self, settings, store: ResultStore, tracker, gate) -> None:
        first = FakeCheck("A", before_return=gate.wait)
        second = FakeCheck("B")
        tracker.start("r1")
        executor = _executor(registry_of(first, second), store, settings, tracker=tracker)

        task = asyncio.create_task(executor.execute(
            progress_id="r1", cancel_token=tracker.cancel_token("r1"),
        ))
        await asyncio.sleep(0.01)
        assert tracker.get("r1").current_test == "A"

        tracker.cancel("r1", "alice")
        gate.set()
        outcome = await task

        assert outcome.status == ProgressStatus.CANCELLED
        assert [r.name for r in outcome.results] == ["A"]
        assert second.calls == 0
        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.CANCELLED
        assert entry.current_test == "A"
        assert store.get_recent_runs() == []
        assert not list(settings.paths.reports.glob("*.json"))

    async def test_cancel_while_saving_is_refused(self, settings, tracker) -> None:
        entered, release = threading.Event(), threading.Event()

        class SlowStore(ResultStore):
            def save_complete_run(self, run):
                entered.set()
                release.wait(5)
                return super().save_complete_run(run)

        store = SlowStore(settings.database_path)
        tracker.start("r1")
        executor = _executor(registry_of(FakeCheck("A")), store, settings, tracker=tracker)

        task = asyncio.create_task(executor.execute(
            progress_id="r1", cancel_token=tracker.cancel_token("r1"),
        ))
        loop = asyncio.get_running_loop()
        assert await loop.run_in_executor(None, entered.wait, 5)

        assert tracker.cancel("r1", "alice") == CancelOutcome.ALREADY_FINISHED
        release.set()
        outcome = await task

        assert outcome.status == ProgressStatus.COMPLETED
        assert outcome.persisted
        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.COMPLETED
        assert entry.cancelled_by is None
        assert len(store.get_recent_runs()) == 1

    async def test_cancel_after_last_check_discards_run(self, settings, store: ResultStore, tracker) -> None:
        tracker.start("r1")

        async def cancel_now() -> None:
            tracker.cancel("r1", "alice")

        executor = _executor(registry_of(FakeCheck("A", before_return=cancel_now)), store, settings,
                             tracker=tracker)
        outcome = await executor.execute(progress_id="r1", cancel_token=tracker.cancel_token("r1"))

        assert outcome.status == ProgressStatus.CANCELLED
        assert tracker.get("r1").status == ProgressStatus.CANCELLED
        assert store.get_recent_runs() == []


class TestConcurrency:
    async def test_runs_do_not_overlap(self, settings, store: ResultStore) -> None:
        active = 0
        peak = 0

        async def track() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        executor = _executor(registry_of(FakeCheck("A", before_return=track)), store, settings)
        await asyncio.gather(executor.execute(), executor.execute(), executor.execute())

        assert peak == 1
        assert len(store.get_recent_runs()) == 3
