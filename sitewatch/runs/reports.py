"""JSON run reports written to the reports directory.

Also serves as the fallback record when the result store is unavailable.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Run

logger = logging.getLogger(__name__)


def report_filename(run_id: int | None, when: datetime | None = None) -> str:
    stamp = (when or datetime.now(timezone.utc)).isoformat().replace(":", "-").replace(".", "-")
    if run_id is not None:
        return f"report-{run_id}-{stamp}.json"
    return f"report-{stamp}.json"


def write_report(
    run: Run,
    reports_dir: Path,
    extra: dict[str, Any] | None = None,
) -> Path | None:
    """Dump the run (with results) as JSON. Errors are logged, never raised."""
    try:
        reports_dir.mkdir(parents=True, exist_ok=True)
        path = reports_dir / report_filename(run.id)
        payload = run.to_dict()
        payload["summary"] = run.summary.to_dict()
        payload["generated_at"] = datetime.now(timezone.utc).isoformat()
        if extra:
            payload.update(extra)
        path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to save report: %s", e)
        return None

    logger.info("JSON report saved: %s", path)
    return path
