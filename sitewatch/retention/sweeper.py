"""Retention sweeper — prunes aged artifacts from the output directories.

Per category (logs, reports, screenshots):
- empty files are deleted outright when ``delete_empty_logs`` is set
- files last modified before ``now - retention_days`` are deleted
- logs above ``max_log_size_mb`` are rotated to ``<name>.old`` and truncated

A file that cannot be processed bumps the category's error count; the
sweep carries on with the rest.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import CleanupConfig, PathsConfig

logger = logging.getLogger(__name__)

CATEGORY_SUFFIXES: dict[str, tuple[str, ...]] = {
    "logs": (".log",),
    "reports": (".json", ".html"),
    "screenshots": (".png", ".jpg", ".jpeg"),
}

_SECONDS_PER_DAY = 24 * 60 * 60


def format_bytes(size: int) -> str:
    """Human-readable size: ``1536 -> '1.5 KB'``."""
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


@dataclass
class CategoryStats:
    deleted: int = 0
    rotated: int = 0
    errors: int = 0
    total_size: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "deleted": self.deleted,
            "rotated": self.rotated,
            "errors": self.errors,
            "total_size": self.total_size,
        }


@dataclass
class SweepResult:
    logs: CategoryStats = field(default_factory=CategoryStats)
    reports: CategoryStats = field(default_factory=CategoryStats)
    screenshots: CategoryStats = field(default_factory=CategoryStats)
    disabled: bool = False
    removed_dirs: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def total_freed(self) -> int:
        return self.logs.total_size + self.reports.total_size + self.screenshots.total_size

    @property
    def total_deleted(self) -> int:
        return self.logs.deleted + self.reports.deleted + self.screenshots.deleted

    def category(self, name: str) -> CategoryStats:
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "disabled": self.disabled,
            "logs": self.logs.to_dict(),
            "reports": self.reports.to_dict(),
            "screenshots": self.screenshots.to_dict(),
            "total_freed": self.total_freed,
            "total_freed_formatted": format_bytes(self.total_freed),
            "removed_dirs": self.removed_dirs,
            "duration_ms": self.duration_ms,
        }


class RetentionSweeper:
    """Deletes and rotates artifacts according to a :class:`CleanupConfig`."""

    def __init__(
        self,
        config: CleanupConfig,
        paths: PathsConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.paths = paths
        self._clock = clock

    def _dirs(self) -> dict[str, Path]:
        return {
            "logs": Path(self.paths.logs),
            "reports": Path(self.paths.reports),
            "screenshots": Path(self.paths.screenshots),
        }

    def _cutoff(self) -> float:
        return self._clock() - self.config.retention_days * _SECONDS_PER_DAY

    # -- sweep ----------------------------------------------------------------

    def perform_cleanup(self) -> SweepResult:
        result = SweepResult()
        if not self.config.enabled:
            logger.info("Cleanup is disabled in config")
            result.disabled = True
            return result

        started = time.monotonic()
        logger.info("Starting cleanup (retention %d days)", self.config.retention_days)
        cutoff = self._cutoff()

        for category, directory in self._dirs().items():
            stats = result.category(category)
            if not directory.is_dir():
                logger.info("%s directory not found: %s", category.capitalize(), directory)
                continue
            for path in self._matching_files(directory, category):
                self._process_file(path, cutoff, category, stats)
            if category == "logs" and self.config.max_log_size_mb:
                self._rotate_oversized(directory, stats)

        if self.config.delete_empty_dirs:
            result.removed_dirs = self._remove_empty_dirs()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Cleanup completed in %dms: deleted %d logs (%d rotated), %d reports, %d screenshots; freed %s",
            result.duration_ms,
            result.logs.deleted,
            result.logs.rotated,
            result.reports.deleted,
            result.screenshots.deleted,
            format_bytes(result.total_freed),
        )
        return result

    @staticmethod
    def _matching_files(directory: Path, category: str) -> list[Path]:
        suffixes = CATEGORY_SUFFIXES[category]
        return sorted(
            p for p in directory.iterdir()
            if p.suffix.lower() in suffixes and p.is_file()
        )

    def _process_file(self, path: Path, cutoff: float, category: str, stats: CategoryStats) -> None:
        try:
            st = path.stat()
            if self.config.delete_empty_logs and st.st_size == 0:
                path.unlink()
                stats.deleted += 1
                logger.info("Deleted empty file: %s", path.name)
                return

            if st.st_mtime < cutoff:
                path.unlink()
                stats.deleted += 1
                stats.total_size += st.st_size
                age_days = int((self._clock() - st.st_mtime) // _SECONDS_PER_DAY)
                logger.info(
                    "Deleted old %s file (%dd): %s - %s",
                    category, age_days, path.name, format_bytes(st.st_size),
                )
        except OSError as e:
            logger.error("Error processing file %s: %s", path, e)
            stats.errors += 1

    def _rotate_oversized(self, directory: Path, stats: CategoryStats) -> None:
        max_bytes = self.config.max_log_size_mb * 1024 * 1024
        for path in self._matching_files(directory, "logs"):
            try:
                size = path.stat().st_size
                if size <= max_bytes:
                    continue
                path.replace(path.with_name(path.name + ".old"))
                path.write_bytes(b"")
                stats.rotated += 1
                logger.info("Rotated oversized log: %s (%s)", path.name, format_bytes(size))
            except OSError as e:
                logger.error("Error rotating log %s: %s", path, e)
                stats.errors += 1

    def _remove_empty_dirs(self) -> list[str]:
        removed = []
        for directory in self._dirs().values():
            try:
                if directory.is_dir() and not any(directory.iterdir()):
                    directory.rmdir()
                    removed.append(str(directory))
                    logger.info("Removed empty directory: %s", directory.name)
            except OSError as e:
                logger.warning("Could not remove directory %s: %s", directory, e)
        return removed

    # -- read-only usage report -----------------------------------------------

    def get_disk_usage(self) -> dict[str, Any]:
        """Size / file counts per artifact directory. Never modifies anything."""
        cutoff = self._cutoff()
        dirs = self._dirs()
        dirs["data"] = Path(self.paths.data)

        usage: dict[str, Any] = {"total": 0, "old_files": 0, "directories": {}}
        for name, directory in dirs.items():
            entry = _directory_usage(directory, cutoff)
            usage["directories"][name] = entry
            usage["total"] += entry["size"]
            usage["old_files"] += entry["old_file_count"]
        usage["total_formatted"] = format_bytes(usage["total"])
        return usage


def _directory_usage(directory: Path, cutoff: float) -> dict[str, Any]:
    size = files = old = 0
    if directory.is_dir():
        for path in directory.iterdir():
            try:
                st = path.stat()
            except OSError:
                continue
            if not path.is_file():
                continue
            size += st.st_size
            files += 1
            if st.st_mtime < cutoff:
                old += 1
    return {
        "size": size,
        "formatted": format_bytes(size),
        "file_count": files,
        "old_file_count": old,
    }
