"""Tests for the in-memory progress tracker."""

from __future__ import annotations

import asyncio
import time

import pytest

from sitewatch.runs.models import CancelOutcome, ProgressStatus
from sitewatch.runs.progress import ProgressTracker, new_run_id


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock: FakeClock) -> ProgressTracker:
    t = ProgressTracker(clock=clock)
    yield t
    t.close()


class TestRunIds:
    def test_manual_prefix(self) -> None:
        run_id = new_run_id()
        prefix, millis, suffix = run_id.split("_")
        assert prefix == "manual"
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_unique(self) -> None:
        assert len({new_run_id() for _ in range(50)}) == 50


class TestLifecycle:
    def test_start(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        entry = tracker.start("r1")
        assert entry.status == ProgressStatus.RUNNING
        assert entry.progress == 0
        assert entry.start_time == clock.now
        assert tracker.get("r1") is not None

    def test_start_generates_id(self, tracker: ProgressTracker) -> None:
        entry = tracker.start()
        assert entry.id.startswith("manual_")

    def test_update_merges(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        assert tracker.update("r1", current_test="Login", progress=33)

        entry = tracker.get("r1")
        assert entry.current_test == "Login"
        assert entry.progress == 33

    def test_update_rejects_unknown_fields(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        with pytest.raises(ValueError):
            tracker.update("r1", status="completed")

    def test_running_progress_never_reaches_100(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.update("r1", progress=100)
        assert tracker.get("r1").progress == 99
        tracker.update("r1", progress=-5)
        assert tracker.get("r1").progress == 0

    def test_complete(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        tracker.start("r1")
        clock.advance(12)
        assert tracker.complete("r1", {"total": 3})

        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.COMPLETED
        assert entry.progress == 100
        assert entry.results == {"total": 3}
        assert entry.end_time == clock.now

    def test_fail(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        assert tracker.fail("r1", "store exploded")

        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.FAILED
        assert entry.error == "store exploded"
        assert entry.progress < 100

    def test_terminal_entries_ignore_updates(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.complete("r1")

        assert not tracker.update("r1", current_test="late")
        assert not tracker.fail("r1", "late")
        assert tracker.get("r1").current_test is None
        assert tracker.get("r1").status == ProgressStatus.COMPLETED

    def test_get_unknown(self, tracker: ProgressTracker) -> None:
        assert tracker.get("nope") is None
        assert not tracker.update("nope", progress=1)

    def test_get_returns_snapshot(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        snapshot = tracker.get("r1")
        tracker.update("r1", progress=50)
        assert snapshot.progress == 0

    def test_snapshot_results_are_copied(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.complete("r1", {"summary": {"total": 1}})

        tracker.get("r1").results["summary"]["total"] = 99
        assert tracker.get("r1").results["summary"]["total"] == 1


class TestCancel:
    def test_cancel_running(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        token = tracker.cancel_token("r1")

        assert tracker.cancel("r1", "alice") == CancelOutcome.OK
        entry = tracker.get("r1")
        assert entry.status == ProgressStatus.CANCELLED
        assert entry.cancelled_by == "alice"
        assert entry.end_time is not None
        assert token.is_set()

    def test_cancel_twice(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.cancel("r1", "alice")
        assert tracker.cancel("r1", "bob") == CancelOutcome.ALREADY_FINISHED
        assert tracker.get("r1").cancelled_by == "alice"

    def test_cancel_completed(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.complete("r1")
        assert tracker.cancel("r1") == CancelOutcome.ALREADY_FINISHED
        assert tracker.get("r1").status == ProgressStatus.COMPLETED

    def test_cancel_unknown(self, tracker: ProgressTracker) -> None:
        assert tracker.cancel("nope") == CancelOutcome.NOT_FOUND

    def test_cancel_blocks_completion(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.cancel("r1")
        assert not tracker.complete("r1", {"total": 1})
        assert tracker.get("r1").status == ProgressStatus.CANCELLED

    def test_cancel_refused_once_finalizing(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        assert tracker.begin_finalize("r1")

        assert tracker.cancel("r1", "alice") == CancelOutcome.ALREADY_FINISHED
        assert not tracker.cancel_token("r1").is_set()
        assert tracker.complete("r1", {"total": 1})
        assert tracker.get("r1").cancelled_by is None

    def test_finalize_after_cancel_is_refused(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.cancel("r1")
        assert not tracker.begin_finalize("r1")

    def test_finalize_unknown_entry(self, tracker: ProgressTracker) -> None:
        assert tracker.begin_finalize("gone")


class TestEstimate:
    def test_none_at_zero_progress(self, tracker: ProgressTracker) -> None:
        entry = tracker.start("r1")
        assert tracker.estimate_remaining(entry) is None

    def test_linear_extrapolation(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        tracker.start("r1")
        clock.advance(10)
        tracker.update("r1", progress=25)

        # 10s for 25% -> 30s left
        assert tracker.estimate_remaining(tracker.get("r1")) == 30_000


class TestEviction:
    def test_sweep_expired_any_status(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        tracker.start("old-running")
        tracker.start("old-done")
        tracker.complete("old-done")
        clock.advance(2 * 60 * 60)
        tracker.start("fresh")

        assert tracker.sweep_expired() == 2
        assert tracker.get("old-running") is None
        assert tracker.get("old-done") is None
        assert tracker.get("fresh") is not None

    def test_sweep_keeps_entries_inside_window(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        tracker.start("r1")
        clock.advance(59 * 60)
        assert tracker.sweep_expired() == 0
        assert tracker.get("r1") is not None

    async def test_schedule_eviction_on_loop(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.complete("r1")
        tracker.schedule_eviction("r1", delay_seconds=0.01)

        assert tracker.get("r1") is not None
        await asyncio.sleep(0.05)
        assert tracker.get("r1") is None

    def test_schedule_eviction_without_loop(self) -> None:
        tracker = ProgressTracker()
        tracker.start("r1")
        tracker.schedule_eviction("r1", delay_seconds=0.01)

        deadline = time.monotonic() + 2
        while tracker.get("r1") is not None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert tracker.get("r1") is None

    async def test_close_cancels_pending_evictions(self, tracker: ProgressTracker) -> None:
        tracker.start("r1")
        tracker.schedule_eviction("r1", delay_seconds=0.01)
        tracker.close()

        await asyncio.sleep(0.05)
        assert tracker.get("r1") is not None
