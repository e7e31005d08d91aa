"""Result store — SQLite persistence for runs, check results, incidents, uptime.

Run and result rows are append-only. Incidents are only ever mutated by
:meth:`ResultStore.resolve_incident`. Uptime is aggregated per UTC day; the
percentage is derived at read time.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..checks.base import CheckResult, CheckStatus
from ..retention.sweeper import format_bytes
from ..runs.models import Run

logger = logging.getLogger(__name__)

DB_PATH = Path("data") / "monitoring.db"

INCIDENT_FILTERS = ("open", "resolved", "all")

_TABLES = ("test_runs", "individual_tests", "incidents", "uptime_stats")


class ResultStoreError(RuntimeError):
    """A write to the result store failed and was rolled back."""


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass
class Incident:
    id: int
    test_name: str
    start_time: str
    end_time: str | None = None
    status: str = "open"
    resolved_by: str | None = None
    resolution_notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UptimeStat:
    date: str
    total_checks: int
    successful_checks: int

    @property
    def uptime_percentage(self) -> float | None:
        # None means "no checks recorded", which is not the same as 0%
        if self.total_checks <= 0:
            return None
        return round(self.successful_checks * 100 / self.total_checks, 2)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["uptime_percentage"] = self.uptime_percentage
        return d


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Store ────────────────────────────────────────────────────────────────────


class ResultStore:
    """SQLite-backed run history."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        dedupe_incidents: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.dedupe_incidents = dedupe_incidents
        self._clock = clock
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """One connection per call; commits on success, rolls back on error."""
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS test_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    total_tests INTEGER NOT NULL,
                    passed_tests INTEGER NOT NULL,
                    failed_tests INTEGER NOT NULL,
                    success_rate REAL NOT NULL,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    triggered_by TEXT NOT NULL DEFAULT 'scheduled'
                );

                CREATE TABLE IF NOT EXISTS individual_tests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL,
                    position INTEGER NOT NULL,
                    test_name TEXT NOT NULL,
                    test_category TEXT NOT NULL DEFAULT 'general',
                    status TEXT NOT NULL,
                    critical INTEGER NOT NULL DEFAULT 0,
                    details TEXT,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    screenshot_path TEXT,
                    error_message TEXT,
                    metrics TEXT,
                    FOREIGN KEY (run_id) REFERENCES test_runs(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS incidents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    test_name TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    status TEXT NOT NULL DEFAULT 'open',
                    resolved_by TEXT,
                    resolution_notes TEXT
                );

                CREATE TABLE IF NOT EXISTS uptime_stats (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL UNIQUE,
                    total_checks INTEGER NOT NULL DEFAULT 0,
                    successful_checks INTEGER NOT NULL DEFAULT 0
                );

                CREATE INDEX IF NOT EXISTS idx_test_runs_timestamp
                    ON test_runs (timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_individual_tests_run_id
                    ON individual_tests (run_id, position);
                CREATE INDEX IF NOT EXISTS idx_individual_tests_status
                    ON individual_tests (status);
                CREATE INDEX IF NOT EXISTS idx_incidents_status
                    ON incidents (status, start_time DESC);
            """)

    # ── Writes ───────────────────────────────────────────────────────────────

    def save_complete_run(self, run: Run) -> int:
        """Persist a finished run with its results, uptime and incidents.

        Everything happens in one transaction. Returns the new run id.
        """
        now = self._clock()
        try:
            with self._conn() as conn:
                cursor = conn.execute(
                    "INSERT INTO test_runs "
                    "(timestamp, total_tests, passed_tests, failed_tests, success_rate, "
                    "duration_ms, triggered_by) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        run.timestamp, run.total_tests, run.passed_tests, run.failed_tests,
                        run.success_rate, run.duration_ms, run.triggered_by,
                    ),
                )
                run_id = int(cursor.lastrowid)

                conn.executemany(
                    "INSERT INTO individual_tests "
                    "(run_id, position, test_name, test_category, status, critical, details, "
                    "duration_ms, screenshot_path, error_message, metrics) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            run_id, pos, r.name, r.category or "general", r.status.value,
                            1 if r.critical else 0, r.details, r.duration_ms,
                            r.screenshot, r.error,
                            json.dumps(r.metrics) if r.metrics is not None else None,
                        )
                        for pos, r in enumerate(run.results)
                    ],
                )

                # A run counts as successful for the day if at least one check passed
                self._bump_uptime(conn, now.date().isoformat(), success=run.passed_tests > 0)

                for r in run.results:
                    if r.critical and r.status != CheckStatus.PASS:
                        self._open_incident(conn, r.name, now.isoformat())
        except sqlite3.Error as e:
            raise ResultStoreError(f"Failed to save run: {e}") from e

        logger.info("Saved run %d (%d results)", run_id, len(run.results))
        return run_id

    def _bump_uptime(self, conn: sqlite3.Connection, day: str, success: bool) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO uptime_stats (date, total_checks, successful_checks) "
            "VALUES (?, 0, 0)",
            (day,),
        )
        conn.execute(
            "UPDATE uptime_stats SET total_checks = total_checks + 1, "
            "successful_checks = successful_checks + ? WHERE date = ?",
            (1 if success else 0, day),
        )

    def _open_incident(self, conn: sqlite3.Connection, test_name: str, started_at: str) -> None:
        if self.dedupe_incidents:
            existing = conn.execute(
                "SELECT id FROM incidents WHERE test_name = ? AND status = 'open' LIMIT 1",
                (test_name,),
            ).fetchone()
            if existing:
                return
        conn.execute(
            "INSERT INTO incidents (test_name, start_time, status) VALUES (?, ?, 'open')",
            (test_name, started_at),
        )
        logger.warning("Opened incident for critical check: %s", test_name)

    def resolve_incident(
        self,
        incident_id: int,
        resolved_by: str | None = None,
        notes: str | None = None,
    ) -> bool:
        """Close an open incident. False if unknown or already resolved."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE incidents SET status = 'resolved', end_time = ?, "
                "resolved_by = ?, resolution_notes = ? "
                "WHERE id = ? AND status = 'open'",
                (
                    self._clock().isoformat(),
                    resolved_by or "System",
                    notes or "Resolved via dashboard",
                    incident_id,
                ),
            )
        return cursor.rowcount > 0

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_recent_runs(self, limit: int = 50) -> list[Run]:
        """Run rows (without results), newest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM test_runs ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_run_from_row(dict(r)) for r in rows]

    def get_run_details(self, run_id: int) -> Run | None:
        """A run with its results in execution order, or None."""
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM test_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            result_rows = conn.execute(
                "SELECT * FROM individual_tests WHERE run_id = ? ORDER BY position",
                (run_id,),
            ).fetchall()
        run = _run_from_row(dict(row))
        run.results = [_result_from_row(dict(r)) for r in result_rows]
        return run

    def search_runs(
        self,
        start_date: str | None = None,
        end_date: str | None = None,
        min_success_rate: float | None = None,
        limit: int = 100,
    ) -> list[Run]:
        """Filter runs by timestamp range and minimum success rate."""
        query = "SELECT * FROM test_runs WHERE 1=1"
        params: list[Any] = []
        if start_date:
            query += " AND timestamp >= ?"
            params.append(start_date)
        if end_date:
            query += " AND timestamp <= ?"
            params.append(end_date)
        if min_success_rate is not None:
            query += " AND success_rate >= ?"
            params.append(min_success_rate)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_run_from_row(dict(r)) for r in rows]

    def get_uptime_stats(self, days: int = 30) -> list[UptimeStat]:
        """Daily aggregates from ``days`` ago up to today, most recent first.

        Days without a stat row are absent, not zero-filled.
        """
        cutoff = (self._clock().date() - timedelta(days=days)).isoformat()
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT date, total_checks, successful_checks FROM uptime_stats "
                "WHERE date >= ? ORDER BY date DESC",
                (cutoff,),
            ).fetchall()
        return [
            UptimeStat(
                date=r["date"],
                total_checks=r["total_checks"],
                successful_checks=r["successful_checks"],
            )
            for r in rows
        ]

    def get_incidents(self, status: str | None = "open") -> list[Incident]:
        """Incidents filtered by status ("open", "resolved" or "all"), newest first."""
        if status not in (None, *INCIDENT_FILTERS):
            raise ValueError(f"Invalid incident status: {status}. Must be one of {INCIDENT_FILTERS}")

        with self._conn() as conn:
            if status in (None, "all"):
                rows = conn.execute(
                    "SELECT * FROM incidents ORDER BY start_time DESC, id DESC",
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM incidents WHERE status = ? ORDER BY start_time DESC, id DESC",
                    (status,),
                ).fetchall()
        return [Incident(**dict(r)) for r in rows]

    def get_current_status(self) -> dict[str, Any]:
        """Dashboard header aggregate."""
        now = self._clock()
        week_ago = (now - timedelta(days=7)).isoformat()
        with self._conn() as conn:
            row = conn.execute(
                "SELECT "
                "(SELECT COUNT(*) FROM test_runs WHERE substr(timestamp, 1, 10) = ?) AS today_runs, "
                "(SELECT COUNT(*) FROM incidents WHERE status = 'open') AS open_incidents, "
                "(SELECT success_rate FROM test_runs ORDER BY timestamp DESC, id DESC LIMIT 1) "
                "AS last_success_rate, "
                "(SELECT AVG(success_rate) FROM test_runs WHERE timestamp >= ?) AS weekly_avg",
                (now.date().isoformat(), week_ago),
            ).fetchone()

        status = dict(row)
        if status["weekly_avg"] is not None:
            status["weekly_avg"] = round(status["weekly_avg"], 2)
        return status

    def database_info(self) -> dict[str, Any]:
        """File size plus per-table row counts."""
        if not self._db_path.exists():
            return {"path": str(self._db_path), "file_exists": False, "size_bytes": 0}

        stat = self._db_path.stat()
        with self._conn() as conn:
            tables = {
                name: conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()[0]
                for name in _TABLES
            }
            span = conn.execute(
                "SELECT MIN(timestamp) AS first_record, MAX(timestamp) AS last_record FROM test_runs",
            ).fetchone()

        return {
            "path": str(self._db_path),
            "file_exists": True,
            "size_bytes": stat.st_size,
            "size_formatted": format_bytes(stat.st_size),
            "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            "tables": tables,
            "total_records": sum(tables.values()),
            "first_record": span["first_record"],
            "last_record": span["last_record"],
        }


# ── Row mapping ──────────────────────────────────────────────────────────────


def _run_from_row(row: dict[str, Any]) -> Run:
    return Run(
        id=row["id"],
        timestamp=row["timestamp"],
        total_tests=row["total_tests"],
        passed_tests=row["passed_tests"],
        failed_tests=row["failed_tests"],
        success_rate=row["success_rate"],
        duration_ms=row["duration_ms"],
        triggered_by=row["triggered_by"],
    )


def _result_from_row(row: dict[str, Any]) -> CheckResult:
    metrics = row.get("metrics")
    if isinstance(metrics, str):
        try:
            metrics = json.loads(metrics)
        except ValueError:
            metrics = None
    return CheckResult.from_row({
        "name": row["test_name"],
        "category": row["test_category"],
        "critical": row["critical"],
        "status": row["status"],
        "details": row["details"],
        "duration_ms": row["duration_ms"],
        "screenshot": row["screenshot_path"],
        "error": row["error_message"],
        "metrics": metrics,
    })
