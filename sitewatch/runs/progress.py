"""In-process progress table for in-flight and recently finished runs.

Entries are keyed by run id. Only ``running`` entries accept updates; the
terminal transitions (completed / failed / cancelled) each happen at most
once. Entries disappear either through :meth:`ProgressTracker.sweep_expired`
(older than an hour, whatever their status) or a per-run eviction timer
armed when the run finishes.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
import threading
import time
import uuid
from collections.abc import Callable
from typing import Any

from .models import CancelOutcome, ProgressEntry, ProgressStatus

logger = logging.getLogger(__name__)

MAX_ENTRY_AGE_SECONDS = 60 * 60
EVICTION_DELAY_SECONDS = 5 * 60

_UPDATABLE_FIELDS = {"progress", "current_test", "results"}


def _snapshot(entry: ProgressEntry) -> ProgressEntry:
    return dataclasses.replace(entry, results=copy.deepcopy(entry.results))


def new_run_id(prefix: str = "manual") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class ProgressTracker:
    """Thread-safe table of :class:`ProgressEntry` keyed by run id."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, ProgressEntry] = {}
        self._lock = threading.Lock()
        self._evictions: dict[str, Any] = {}

    # -- lifecycle ------------------------------------------------------------

    def start(self, run_id: str | None = None, triggered_by: str = "manual") -> ProgressEntry:
        """Register a new running entry at 0%."""
        entry = ProgressEntry(
            id=run_id or new_run_id(),
            start_time=self._clock(),
            triggered_by=triggered_by,
        )
        with self._lock:
            self._entries[entry.id] = entry
        return _snapshot(entry)

    def update(self, run_id: str, **fields: Any) -> bool:
        """Merge fields into a running entry. Returns False if it is gone or terminal."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update progress fields: {sorted(unknown)}")

        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None or not entry.is_running:
                return False
            if "progress" in fields:
                # 100 is reserved for completed runs
                fields["progress"] = min(max(int(fields["progress"]), 0), 99)
            for key, value in fields.items():
                setattr(entry, key, value)
        return True

    def complete(self, run_id: str, results: dict[str, Any] | None = None) -> bool:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None or not entry.is_running:
                return False
            entry.status = ProgressStatus.COMPLETED
            entry.progress = 100
            entry.results = results
            entry.end_time = self._clock()
        return True

    def fail(self, run_id: str, error: str) -> bool:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None or not entry.is_running:
                return False
            entry.status = ProgressStatus.FAILED
            entry.error = error
            entry.end_time = self._clock()
        return True

    def begin_finalize(self, run_id: str) -> bool:
        """Close the cancellation window before a run is saved.

        Returns False when the entry was cancelled (or otherwise finished)
        first, in which case the run must be discarded. An entry that is
        already gone does not block saving.
        """
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return True
            if not entry.is_running:
                return False
            entry.finalizing = True
        return True

    def cancel(self, run_id: str, cancelled_by: str = "unknown") -> CancelOutcome:
        """Request cooperative cancellation of a running entry."""
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return CancelOutcome.NOT_FOUND
            if not entry.is_running or entry.finalizing:
                return CancelOutcome.ALREADY_FINISHED
            entry.status = ProgressStatus.CANCELLED
            entry.cancelled_by = cancelled_by
            entry.end_time = self._clock()
            entry.cancel_event.set()
        logger.info("Run %s cancelled by %s", run_id, cancelled_by)
        return CancelOutcome.OK

    # -- reads ------------------------------------------------------------------

    def get(self, run_id: str) -> ProgressEntry | None:
        """Snapshot of an entry, or None when expired / never existed."""
        with self._lock:
            entry = self._entries.get(run_id)
            return _snapshot(entry) if entry else None

    def cancel_token(self, run_id: str) -> threading.Event | None:
        with self._lock:
            entry = self._entries.get(run_id)
            return entry.cancel_event if entry else None

    def estimate_remaining(self, entry: ProgressEntry) -> int | None:
        """Linear extrapolation of the remaining time in ms (advisory only)."""
        if not entry.start_time or entry.progress <= 0:
            return None
        elapsed_ms = (self._clock() - entry.start_time) * 1000
        return max(0, int(elapsed_ms * (100 / entry.progress - 1)))

    # -- eviction -------------------------------------------------------------

    def sweep_expired(self, max_age_seconds: float = MAX_ENTRY_AGE_SECONDS) -> int:
        """Drop entries started more than ``max_age_seconds`` ago, any status."""
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            expired = [rid for rid, e in self._entries.items() if e.start_time < cutoff]
            for rid in expired:
                del self._entries[rid]
        for rid in expired:
            logger.info("Auto-cleaned old run progress: %s", rid)
        return len(expired)

    def schedule_eviction(self, run_id: str, delay_seconds: float = EVICTION_DELAY_SECONDS) -> None:
        """Remove the entry after a grace period so late polls still see it."""
        self._cancel_eviction(run_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(delay_seconds, self._evict, args=(run_id,))
            timer.daemon = True
            timer.start()
            self._evictions[run_id] = timer
            return
        self._evictions[run_id] = loop.call_later(delay_seconds, self._evict, run_id)

    def close(self) -> None:
        """Cancel pending eviction timers."""
        for run_id in list(self._evictions):
            self._cancel_eviction(run_id)

    def _evict(self, run_id: str) -> None:
        self._evictions.pop(run_id, None)
        with self._lock:
            removed = self._entries.pop(run_id, None)
        if removed:
            logger.info("Cleaned up run progress %s", run_id)

    def _cancel_eviction(self, run_id: str) -> None:
        handle = self._evictions.pop(run_id, None)
        if handle is not None:
            handle.cancel()
