"""Durable run history — SQLite storage for runs, results, incidents and uptime."""

from .results import Incident, ResultStore, ResultStoreError, UptimeStat
