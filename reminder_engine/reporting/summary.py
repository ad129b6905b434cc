"""Summary generation for routine run reports."""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import asdict
from pathlib import Path
from typing import Any

from reminder_engine.domain.models import RunReport


def compute_summary(reports: list[RunReport]) -> dict[str, Any]:
    """Compute aggregate stats across one sweep of routine runs."""
    skipped_reasons: Counter[str] = Counter()
    for report in reports:
        skipped_reasons.update(report.skipped)

    status_counts = Counter(report.execution_status for report in reports if report.execution_status)
    errored = [
        {"routine_id": report.routine_id, "error_message": report.error_message}
        for report in reports
        if report.error_message
    ]

    return {
        "routines": len(reports),
        "busy_skipped": sum(1 for report in reports if report.skipped_busy),
        "total_found": sum(report.total_found for report in reports),
        "successful_sends": sum(report.successful for report in reports),
        "failed_sends": sum(report.failed for report in reports),
        "skipped": {
            "total": sum(skipped_reasons.values()),
            "reasons": dict(skipped_reasons),
        },
        "execution_statuses": dict(status_counts),
        "errors": errored,
    }


def write_summary(path: Path, summary: dict[str, Any], reports: list[RunReport]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"summary": summary, "reports": [asdict(report) for report in reports]}, indent=2) + "\n",
        encoding="utf-8",
    )
    return path
