"""Dashboard API routes — manual runs, progress, history, incidents, retention."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..checks.registry import CheckRegistryError
from ..runs.models import CancelOutcome
from ..runs.scheduler import RunScheduler, format_duration
from ..runs.service import MonitorService
from ..store.results import INCIDENT_FILTERS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["monitor"])


# ── Request models ───────────────────────────────────────────────────────


class ManualRunBody(BaseModel):
    triggered_by: str | None = None


class ResolveIncidentBody(BaseModel):
    resolved_by: str | None = None
    notes: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────


def _get_service(request: Request) -> MonitorService:
    return request.app.state.service  # type: ignore[no-any-return]


def _requester(request: Request) -> str:
    return getattr(request.state, "user", None) or "unknown"


# ── Runs ─────────────────────────────────────────────────────────────────


@router.post("/runs/manual")
async def start_manual_run(request: Request, body: ManualRunBody | None = None) -> dict[str, Any]:
    """Start a run in the background; poll the returned progress URL."""
    service = _get_service(request)
    triggered_by = (body.triggered_by if body else None) or "manual"
    try:
        run_id = service.start_manual_run(triggered_by)
    except CheckRegistryError as e:
        raise HTTPException(500, str(e))
    return {
        "success": True,
        "run_id": run_id,
        "message": "Manual run started",
        "status_url": f"/api/runs/{run_id}/progress",
    }


@router.get("/runs/recent")
async def recent_runs(request: Request, limit: int = 10) -> dict[str, Any]:
    if limit < 1:
        raise HTTPException(400, "limit must be positive")
    runs = _get_service(request).get_recent_runs(limit)
    return {"runs": [r.to_dict(include_results=False) for r in runs], "count": len(runs)}


@router.get("/runs/search")
async def search_runs(
    request: Request,
    start_date: str | None = None,
    end_date: str | None = None,
    min_success_rate: float | None = None,
) -> dict[str, Any]:
    runs = _get_service(request).search_runs(start_date, end_date, min_success_rate)
    return {"runs": [r.to_dict(include_results=False) for r in runs], "count": len(runs)}


@router.get("/runs/{run_id}/progress")
async def run_progress(run_id: str, request: Request) -> dict[str, Any]:
    service = _get_service(request)
    entry = service.get_progress(run_id)
    if entry is None:
        raise HTTPException(404, "Run not found or expired")
    data = entry.to_dict()
    data["estimated_time_remaining"] = (
        service.estimate_remaining(entry) if entry.is_running else None
    )
    return data


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, request: Request) -> dict[str, Any]:
    service = _get_service(request)
    outcome = service.cancel_run(run_id, _requester(request))
    if outcome == CancelOutcome.NOT_FOUND:
        raise HTTPException(404, "Run not found")
    if outcome == CancelOutcome.ALREADY_FINISHED:
        entry = service.get_progress(run_id)
        saving = entry is not None and entry.is_running
        return {
            "success": False,
            "message": "Run is already being saved" if saving else "Run is not running",
            "status": entry.status.value if entry else None,
        }
    return {"success": True, "message": "Run cancellation requested"}


@router.get("/runs/{run_id}")
async def run_details(run_id: int, request: Request) -> dict[str, Any]:
    run = _get_service(request).get_run_details(run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    return run.to_dict()


# ── Uptime / incidents / status ──────────────────────────────────────────


@router.get("/uptime")
async def uptime(request: Request, days: int = 30) -> dict[str, Any]:
    if days < 1:
        raise HTTPException(400, "days must be positive")
    stats = _get_service(request).get_uptime_stats(days)
    return {"days": days, "stats": [s.to_dict() for s in stats]}


@router.get("/incidents")
async def incidents(request: Request, status: str = "open") -> dict[str, Any]:
    if status not in INCIDENT_FILTERS:
        raise HTTPException(400, f"status must be one of {', '.join(INCIDENT_FILTERS)}")
    found = _get_service(request).get_incidents(status)
    return {"incidents": [i.to_dict() for i in found], "count": len(found)}


@router.post("/incidents/{incident_id}/resolve")
async def resolve_incident(
    incident_id: int, request: Request, body: ResolveIncidentBody | None = None,
) -> dict[str, Any]:
    body = body or ResolveIncidentBody()
    resolved = _get_service(request).resolve_incident(
        incident_id, body.resolved_by or _requester(request), body.notes,
    )
    if not resolved:
        raise HTTPException(404, "Incident not found or already resolved")
    return {"success": True, "id": incident_id}


@router.get("/status")
async def status(request: Request) -> dict[str, Any]:
    service = _get_service(request)
    data = service.get_current_status()
    data["database"] = service.database_info()
    return data


@router.get("/next-runtime")
async def next_runtime(request: Request) -> dict[str, Any]:
    service = _get_service(request)
    scheduler: RunScheduler = request.app.state.scheduler
    recent = service.get_recent_runs(1)
    remaining_ms = scheduler.next_run_in(recent[0].timestamp if recent else None)
    interval_ms = int(scheduler.interval_seconds * 1000)
    return {
        "interval": {
            "hours": service.settings.monitoring.check_interval_hours,
            "ms": interval_ms,
            "label": format_duration(interval_ms),
        },
        "remaining": {"ms": remaining_ms, "label": format_duration(remaining_ms)},
    }


# ── Retention ────────────────────────────────────────────────────────────


@router.post("/cleanup")
async def cleanup(request: Request) -> dict[str, Any]:
    service = _get_service(request)
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, service.run_cleanup_now)
    return result.to_dict()


@router.get("/disk-usage")
async def disk_usage(request: Request) -> dict[str, Any]:
    return _get_service(request).get_disk_usage()


# ── Checks ───────────────────────────────────────────────────────────────


@router.get("/checks")
async def list_checks(request: Request) -> dict[str, Any]:
    checks = _get_service(request).list_checks()
    return {"checks": checks, "count": len(checks)}
