"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from sitewatch.checks.base import CheckResult, CheckStatus
from sitewatch.checks.registry import CheckRegistry
from sitewatch.config import CleanupConfig, MonitoringConfig, PathsConfig, Settings
from sitewatch.runs.progress import ProgressTracker
from sitewatch.store.results import ResultStore


class FakeCheck:
    """Check double returning a canned status; records how often it ran."""

    def __init__(
        self,
        name: str,
        status: CheckStatus = CheckStatus.PASS,
        critical: bool = False,
        category: str = "test",
        raises: Exception | None = None,
        before_return: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self.status = status
        self.critical = critical
        self.category = category
        self.raises = raises
        self.before_return = before_return
        self.calls = 0

    async def run(self) -> CheckResult:
        self.calls += 1
        if self.before_return is not None:
            await self.before_return()
        if self.raises is not None:
            raise self.raises
        return CheckResult(
            name=self.name,
            category=self.category,
            critical=self.critical,
            status=self.status,
            details=f"{self.name} -> {self.status.value}",
            duration_ms=5,
            error="boom" if self.status == CheckStatus.FAIL else None,
        )


def factory_for(check: FakeCheck):
    """Registry factory that always hands out the given instance."""

    def build(settings, logger):
        return check

    build.__name__ = check.name
    return build


def registry_of(*checks: FakeCheck, orders: list[int] | None = None) -> CheckRegistry:
    registry = CheckRegistry()
    for i, check in enumerate(checks):
        order = orders[i] if orders else (i + 1) * 10
        registry.register(factory_for(check), order=order)
    return registry


def make_settings(tmp_path: Path, **monitoring) -> Settings:
    cleanup = monitoring.pop("cleanup", None) or CleanupConfig()
    return Settings(
        _env_file=None,
        database_path=tmp_path / "data" / "monitoring.db",
        sites_file=tmp_path / "sites.yaml",
        monitoring=MonitoringConfig(cleanup=cleanup, **monitoring),
        paths=PathsConfig(
            logs=tmp_path / "logs",
            reports=tmp_path / "reports",
            screenshots=tmp_path / "screenshots",
            data=tmp_path / "data",
        ),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def store(settings: Settings) -> ResultStore:
    return ResultStore(settings.database_path)


@pytest.fixture
def tracker() -> ProgressTracker:
    t = ProgressTracker()
    yield t
    t.close()


@pytest.fixture
def gate() -> asyncio.Event:
    """Event a FakeCheck can wait on to hold a run mid-check."""
    return asyncio.Event()
