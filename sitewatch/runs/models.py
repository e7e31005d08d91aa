"""Run records and in-memory progress entries."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..checks.base import CheckResult, CheckStatus


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class RunSummary:
    total: int
    passed: int
    failed: int
    skipped: int
    success_rate: float

    @classmethod
    def from_results(cls, results: list[CheckResult]) -> "RunSummary":
        total = len(results)
        passed = sum(1 for r in results if r.status == CheckStatus.PASS)
        failed = sum(1 for r in results if r.status == CheckStatus.FAIL)
        skipped = total - passed - failed
        # SKIP results count toward the total, so they lower the rate
        rate = round(passed / total * 100, 2) if total > 0 else 0
        return cls(total=total, passed=passed, failed=failed, skipped=skipped, success_rate=rate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "success_rate": self.success_rate,
        }


@dataclass
class Run:
    """One full sequential execution of the enabled checks."""

    timestamp: str
    total_tests: int
    passed_tests: int
    failed_tests: int
    success_rate: float
    duration_ms: int = 0
    triggered_by: str = "scheduled"
    id: int | None = None
    results: list[CheckResult] = field(default_factory=list)

    @classmethod
    def from_results(
        cls,
        results: list[CheckResult],
        triggered_by: str = "scheduled",
        duration_ms: int = 0,
        timestamp: str = "",
    ) -> "Run":
        summary = RunSummary.from_results(results)
        return cls(
            timestamp=timestamp or utc_now_iso(),
            total_tests=summary.total,
            passed_tests=summary.passed,
            failed_tests=summary.failed,
            success_rate=summary.success_rate,
            duration_ms=duration_ms,
            triggered_by=triggered_by,
            results=list(results),
        )

    @property
    def summary(self) -> RunSummary:
        return RunSummary(
            total=self.total_tests,
            passed=self.passed_tests,
            failed=self.failed_tests,
            skipped=self.total_tests - self.passed_tests - self.failed_tests,
            success_rate=self.success_rate,
        )

    def to_dict(self, include_results: bool = True) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "success_rate": self.success_rate,
            "duration_ms": self.duration_ms,
            "triggered_by": self.triggered_by,
        }
        if include_results:
            d["results"] = [r.to_dict() for r in self.results]
        return d


# ── Progress ─────────────────────────────────────────────────────────────────


class ProgressStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancelOutcome(str, Enum):
    OK = "ok"
    ALREADY_FINISHED = "already-finished"
    NOT_FOUND = "not-found"


@dataclass
class ProgressEntry:
    """Live view of one run, for polling clients."""

    id: str
    start_time: float
    status: ProgressStatus = ProgressStatus.RUNNING
    end_time: float | None = None
    progress: int = 0
    current_test: str | None = None
    triggered_by: str = "manual"
    results: dict[str, Any] | None = None
    error: str | None = None
    cancelled_by: str | None = None
    # Set once the executor starts saving; the run can no longer be cancelled
    finalizing: bool = field(default=False, repr=False, compare=False)
    # Cooperative cancellation token, checked by the executor between checks
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def is_running(self) -> bool:
        return self.status == ProgressStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "progress": self.progress,
            "current_test": self.current_test,
            "triggered_by": self.triggered_by,
            "results": self.results,
            "error": self.error,
            "cancelled_by": self.cancelled_by,
        }
