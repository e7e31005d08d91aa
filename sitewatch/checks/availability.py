"""Availability check — every catalogued site must answer with its expected status."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from ..config import Settings
from .base import CheckResult, CheckStatus
from .registry import SiteDef, load_sites

# Degrade threshold, reported in metrics only
SLOW_RESPONSE_MS = 3000

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class AvailabilityCheck:
    name = "Website availability"
    category = "availability"
    critical = True

    def __init__(self, settings: Settings, logger: logging.Logger) -> None:
        self.settings = settings
        self.logger = logger
        self.timeout = settings.monitoring.timeout_seconds
        self.sites: list[SiteDef] = load_sites(settings.sites_file)

    async def run(self) -> CheckResult:
        t0 = time.perf_counter()
        if not self.sites:
            return self._result(CheckStatus.SKIP, "No sites configured", t0)

        per_site: dict[str, Any] = {}
        failures: list[str] = []

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": _USER_AGENT},
            ) as client:
                for site in self.sites:
                    outcome = await self._probe(client, site)
                    per_site[site.id] = outcome
                    if not outcome["ok"]:
                        failures.append(f"{site.name}: {outcome['message']}")
        except Exception as e:
            self.logger.error("Availability check crashed: %s", e)
            return self._result(
                CheckStatus.FAIL, "Availability check crashed", t0,
                error=f"{type(e).__name__}: {e}", metrics={"sites": per_site},
            )

        metrics = {
            "requests": len(per_site),
            "failed_requests": len(failures),
            "sites": per_site,
        }
        if failures:
            return self._result(
                CheckStatus.FAIL, "; ".join(failures), t0,
                error=failures[0], metrics=metrics,
            )
        return self._result(
            CheckStatus.PASS, f"{len(per_site)} site(s) reachable", t0, metrics=metrics,
        )

    async def _probe(self, client: httpx.AsyncClient, site: SiteDef) -> dict[str, Any]:
        self.logger.info("[%s] Checking %s availability...", site.id, site.url)
        t0 = time.perf_counter()
        try:
            resp = await client.get(site.url)
        except httpx.TimeoutException:
            return {"ok": False, "latency_ms": self.timeout * 1000,
                    "message": f"Timed out after {self.timeout}s"}
        except httpx.HTTPError as e:
            latency = (time.perf_counter() - t0) * 1000
            self.logger.warning("[%s] Request failed: %s", site.id, e)
            return {"ok": False, "latency_ms": round(latency, 1),
                    "message": f"Connection error: {e}"}

        latency = (time.perf_counter() - t0) * 1000
        ok = resp.status_code == site.expected_status
        return {
            "ok": ok,
            "status_code": resp.status_code,
            "latency_ms": round(latency, 1),
            "slow": latency > SLOW_RESPONSE_MS,
            "message": f"{resp.status_code} OK" if ok
            else f"Expected {site.expected_status}, got {resp.status_code}",
        }

    def _result(
        self,
        status: CheckStatus,
        details: str,
        t0: float,
        error: str | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> CheckResult:
        return CheckResult(
            name=self.name,
            category=self.category,
            critical=self.critical,
            status=status,
            details=details,
            duration_ms=int((time.perf_counter() - t0) * 1000),
            error=error,
            metrics=metrics,
        )
