"""Purge old send records and execution logs.

Run with:
    python -m reminder_engine.jobs.purge_logs --days 90
"""

from __future__ import annotations

import argparse
import logging

from reminder_engine.jobs.tasks import Components, build_components

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


def positive_days(value: str) -> int:
    """argparse type for retention windows."""
    days = int(value)
    if days < 1:
        raise argparse.ArgumentTypeError("retention must be at least one day")
    return days


def purge(days: int = DEFAULT_RETENTION_DAYS, *, components: Components | None = None) -> dict[str, int]:
    if days < 1:
        raise ValueError("Retention must be at least one day")

    owned = components is None
    components = components or build_components()
    try:
        send_records = components.send_ledger.delete_older_than(days)
        execution_logs = components.execution_ledger.cleanup_old_logs(days)
    finally:
        if owned:
            components.close()

    logger.info("Purged %s send records and %s execution logs older than %s days", send_records, execution_logs, days)
    return {"send_records": send_records, "execution_logs": execution_logs}


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete ledger rows past the retention window")
    parser.add_argument("--days", type=positive_days, default=DEFAULT_RETENTION_DAYS)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    result = purge(args.days)
    print(f"Purged {result['send_records']} send records and {result['execution_logs']} execution logs")


if __name__ == "__main__":
    main()
