from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form stored in ledger columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
