"""Checks — the probe contract, built-in probes and the ordered registry."""

from .base import Check, CheckFactory, CheckResult, CheckStatus
from .registry import CheckRegistry, CheckRegistryError, default_registry
