"""Check registry — ordered, enable-flagged list of check factories.

Also loads the site catalogue (sites.yaml) that the built-in checks probe:

    sites:
      - id: shop
        name: Main shop
        url: https://shop.example.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..config import Settings
from .base import Check, CheckFactory

logger = logging.getLogger(__name__)

DEFAULT_ORDER = 999


class CheckRegistryError(RuntimeError):
    """A registered factory failed to build its check."""


# ── Registry ─────────────────────────────────────────────────────────────────


@dataclass
class RegisteredCheck:
    factory: CheckFactory
    enabled: bool = True
    order: int = DEFAULT_ORDER
    description: str = ""

    @property
    def name(self) -> str:
        return getattr(self.factory, "__name__", repr(self.factory))


class CheckRegistry:
    """Holds check factories and builds a fresh, ordered set per run."""

    def __init__(self) -> None:
        self._entries: list[RegisteredCheck] = []

    def register(
        self,
        factory: CheckFactory,
        enabled: bool = True,
        order: int = DEFAULT_ORDER,
        description: str = "",
    ) -> RegisteredCheck:
        entry = RegisteredCheck(factory=factory, enabled=enabled, order=order, description=description)
        self._entries.append(entry)
        return entry

    def get_checks(self, settings: Settings, log: logging.Logger | None = None) -> list[Check]:
        """Instantiate every enabled check, ascending ``order``.

        Ties keep registration order. A factory that raises aborts the whole
        build with :class:`CheckRegistryError`.
        """
        log = log or logger
        checks: list[Check] = []
        for entry in sorted(self.enabled_entries(), key=lambda e: e.order):
            try:
                checks.append(entry.factory(settings, log))
            except Exception as e:
                raise CheckRegistryError(f"Failed to construct check {entry.name}: {e}") from e
        return checks

    def enabled_entries(self) -> list[RegisteredCheck]:
        return [e for e in self._entries if e.enabled]

    def to_dict(self) -> list[dict[str, Any]]:
        return [
            {"name": e.name, "enabled": e.enabled, "order": e.order, "description": e.description}
            for e in self._entries
        ]


def default_registry() -> CheckRegistry:
    """Registry with the built-in checks."""
    from .availability import AvailabilityCheck
    from .tls import TlsCheck

    registry = CheckRegistry()
    registry.register(
        AvailabilityCheck, order=10, description="Checks that every site is reachable",
    )
    registry.register(
        TlsCheck, order=20, description="Checks TLS certificate expiry for https sites",
    )
    return registry


# ── Site catalogue ───────────────────────────────────────────────────────────


@dataclass
class SiteDef:
    """A monitored website from sites.yaml."""

    id: str
    url: str
    name: str = ""
    expected_status: int = 200
    tags: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id


def load_sites(path: Path) -> list[SiteDef]:
    """Parse the site catalogue; a missing or unreadable file yields no sites."""
    if not path.exists():
        logger.warning("Site catalogue not found: %s", path)
        return []

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to parse %s: %s", path, e)
        return []

    sites: list[SiteDef] = []
    for entry in raw.get("sites", []) or []:
        try:
            sites.append(
                SiteDef(
                    id=entry["id"],
                    url=entry["url"],
                    name=entry.get("name", ""),
                    expected_status=entry.get("expected_status", 200),
                    tags=entry.get("tags") or [],
                )
            )
        except (KeyError, TypeError) as e:
            logger.warning("Skipping malformed site entry: %s", e)
    return sites
