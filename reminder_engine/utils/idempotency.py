from __future__ import annotations

import hashlib

from reminder_engine.domain.models import SEND_TYPE_ROUTINE
from reminder_engine.ledger.send_ledger import SendLedger

DEFAULT_WINDOW_SECONDS = 300


def build_body_hash(appointment_id: int | None, template_id: int | None, send_type: str, body: str) -> str:
    key = f"{appointment_id or 0}|{template_id or 0}|{send_type}|{body}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class IdempotencyGuard:
    """Decides whether a non-routine send would repeat a recent delivery.

    Routine sends are deduplicated by routine send marks instead, and a
    reschedule always warrants a fresh notice.
    """

    def __init__(self, send_ledger: SendLedger, *, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> None:
        self.send_ledger = send_ledger
        self.window_seconds = window_seconds

    def is_duplicate(
        self,
        *,
        appointment_id: int | None,
        status_key: str,
        template_id: int | None,
        send_type: str,
        body_hash: str,
        window_seconds: int | None = None,
        time_changed: bool = False,
    ) -> bool:
        if send_type == SEND_TYPE_ROUTINE:
            return False
        if time_changed:
            return False
        if self.send_ledger.exists_by_hash(body_hash):
            return True
        return self.send_ledger.is_duplicate_send(
            appointment_id=appointment_id,
            template_id=template_id,
            send_type=send_type,
            status_key=status_key,
            window_seconds=self.window_seconds if window_seconds is None else window_seconds,
        )
