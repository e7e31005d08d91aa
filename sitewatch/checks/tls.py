"""TLS certificate check — warns before https certificates expire."""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

from ..config import Settings
from .base import CheckResult, CheckStatus
from .registry import load_sites

WARN_DAYS_BEFORE = 14


def certificate_days_left(hostname: str, port: int = 443, timeout: float = 10) -> int:
    """Connect, read the peer certificate and return days until ``notAfter``."""
    ctx = ssl.create_default_context()
    with socket.create_connection((hostname, port), timeout=timeout) as sock:
        with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
            cert = ssock.getpeercert()
    if not cert:
        raise ssl.SSLError("No certificate returned")

    not_after = cert.get("notAfter", "")
    expiry = datetime.strptime(not_after, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)
    return (expiry - datetime.now(timezone.utc)).days


class TlsCheck:
    name = "TLS certificates"
    category = "security"
    critical = False

    def __init__(self, settings: Settings, logger: logging.Logger) -> None:
        self.logger = logger
        self.timeout = settings.monitoring.timeout_seconds
        self.hosts = sorted({
            urlsplit(s.url).hostname
            for s in load_sites(settings.sites_file)
            if s.url.startswith("https://") and urlsplit(s.url).hostname
        })

    async def run(self) -> CheckResult:
        t0 = time.perf_counter()
        if not self.hosts:
            return self._result(CheckStatus.SKIP, "No https sites configured", t0)

        loop = asyncio.get_running_loop()
        days: dict[str, Any] = {}
        problems: list[str] = []
        for host in self.hosts:
            try:
                left = await loop.run_in_executor(
                    None, certificate_days_left, host, 443, self.timeout,
                )
            except (OSError, ValueError) as e:
                problems.append(f"{host}: TLS error: {type(e).__name__}: {e}")
                continue
            days[host] = left
            if left < 0:
                problems.append(f"{host}: certificate EXPIRED {-left} days ago")
            elif left < WARN_DAYS_BEFORE:
                problems.append(f"{host}: certificate expires in {left} days")

        if problems:
            self.logger.warning("TLS problems: %s", "; ".join(problems))
            return self._result(
                CheckStatus.FAIL, "; ".join(problems), t0,
                error=problems[0], metrics={"days_left": days},
            )
        return self._result(
            CheckStatus.PASS, f"{len(days)} certificate(s) valid", t0, metrics={"days_left": days},
        )

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
