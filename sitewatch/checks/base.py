"""Check contract — what the runner needs from a single automated probe.

A check is any object exposing ``name``, ``category``, ``critical`` and an
async ``run()`` that returns a :class:`CheckResult`. Checks are constructed
by the registry as ``factory(settings, logger)`` and are expected to catch
their own errors into a FAIL result.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

from ..config import Settings


class CheckStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single check execution."""

    name: str
    category: str
    critical: bool
    status: CheckStatus
    details: str = ""
    duration_ms: int = 0
    screenshot: str | None = None
    error: str | None = None
    metrics: dict[str, Any] | None = None

    @property
    def is_critical_failure(self) -> bool:
        return self.critical and self.status == CheckStatus.FAIL

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CheckResult":
        return cls(
            name=row["name"],
            category=row.get("category") or "general",
            critical=bool(row.get("critical", False)),
            status=CheckStatus(row["status"]),
            details=row.get("details") or "",
            duration_ms=int(row.get("duration_ms") or 0),
            screenshot=row.get("screenshot"),
            error=row.get("error"),
            metrics=row.get("metrics"),
        )


@runtime_checkable
class Check(Protocol):
    """A named, independently runnable probe."""

    name: str
    category: str
    critical: bool

    async def run(self) -> CheckResult: ...


CheckFactory = Callable[[Settings, logging.Logger], Check]
