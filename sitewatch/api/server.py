"""FastAPI server for the monitoring dashboard."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..checks.registry import CheckRegistry, default_registry
from ..config import Settings
from ..notifications import NotificationManager
from ..runs.progress import ProgressTracker
from ..runs.scheduler import RunScheduler
from ..runs.service import MonitorService
from ..store.results import ResultStore
from .auth import BasicAuthMiddleware
from .routes import router

logger = logging.getLogger(__name__)


def build_service(settings: Settings, registry: CheckRegistry | None = None) -> MonitorService:
    """Wire store, tracker, notifier and registry into one service."""
    store = ResultStore(
        settings.database_path,
        dedupe_incidents=settings.monitoring.dedupe_incidents,
    )
    notifier = NotificationManager.from_settings(settings)
    logger.info("Notifications: %s", notifier.status())
    return MonitorService(
        settings,
        registry or default_registry(),
        store,
        tracker=ProgressTracker(),
        notifier=notifier,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the monitor service on startup, tear it down on shutdown."""
    settings: Settings = app.state.settings
    service = build_service(settings, app.state.registry)
    app.state.service = service

    scheduler = RunScheduler(service)
    app.state.scheduler = scheduler
    if app.state.start_scheduler:
        try:
            await scheduler.start()
        except Exception:
            logger.exception("Run scheduler failed to start")

    yield

    await scheduler.stop()
    await service.close()


def create_app(
    settings: Settings | None = None,
    registry: CheckRegistry | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(
        title="Sitewatch - Website Monitoring",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.start_scheduler = start_scheduler

    app.add_middleware(BasicAuthMiddleware, config=settings.dashboard)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
