"""Persistence for per-attempt send records and routine send marks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, func, select

from reminder_engine.db.models import RoutineSendMark, SendRecord
from reminder_engine.db.session import SessionFactory
from reminder_engine.domain.models import RESULT_PENDING
from reminder_engine.utils.clock import utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SendLedger:
    def __init__(self, session_factory: SessionFactory, *, clock: Clock = utc_now) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create_log_entry(
        self,
        *,
        appointment_id: int | None,
        template_id: int | None,
        status_key: str,
        to_phone: str,
        body_hash: str,
        send_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Insert a PENDING record and commit it before the gateway is called."""
        record = SendRecord(
            appointment_id=appointment_id,
            template_id=template_id,
            status_key=status_key or "",
            to_phone=to_phone,
            body_hash=body_hash,
            send_type=send_type,
            request_payload=payload,
            result=RESULT_PENDING,
            created_at=self._clock(),
        )
        with self._session_factory() as session:
            session.add(record)
            session.commit()
            return record.id

    def update_log_result(
        self,
        log_id: int,
        result: str,
        *,
        http_status: int | None = None,
        response: dict[str, Any] | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        with self._session_factory() as session:
            record = session.get(SendRecord, log_id)
            if record is None:
                logger.warning("Send record %s not found; result %s dropped", log_id, result)
                return False
            record.result = result
            record.http_status = http_status
            record.response_payload = response
            record.error_code = error_code
            record.error_message = error_message
            record.updated_at = self._clock()
            session.commit()
            return True

    def get(self, log_id: int) -> SendRecord | None:
        with self._session_factory() as session:
            return session.get(SendRecord, log_id)

    def get_by_appointment(self, appointment_id: int) -> list[SendRecord]:
        stmt = (
            select(SendRecord)
            .where(SendRecord.appointment_id == appointment_id)
            .order_by(SendRecord.created_at.desc(), SendRecord.id.desc())
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def exists_by_hash(self, body_hash: str) -> bool:
        stmt = select(SendRecord.id).where(SendRecord.body_hash == body_hash).limit(1)
        with self._session_factory() as session:
            return session.scalar(stmt) is not None

    def is_duplicate_send(
        self,
        *,
        appointment_id: int | None,
        template_id: int | None,
        send_type: str,
        status_key: str,
        window_seconds: int = 300,
    ) -> bool:
        """True when a matching record was created within the last window_seconds.

        Null ids and empty keys are left out of the filter.
        """
        since = self._clock() - timedelta(seconds=window_seconds)
        stmt = select(SendRecord.id).where(SendRecord.created_at >= since)
        if appointment_id:
            stmt = stmt.where(SendRecord.appointment_id == appointment_id)
        if template_id:
            stmt = stmt.where(SendRecord.template_id == template_id)
        if send_type:
            stmt = stmt.where(SendRecord.send_type == send_type)
        if status_key:
            stmt = stmt.where(SendRecord.status_key == status_key)

        with self._session_factory() as session:
            return session.scalar(stmt.limit(1)) is not None

    def stats(self, *, since: datetime | None = None) -> dict[str, int]:
        stmt = select(SendRecord.result, func.count(SendRecord.id)).group_by(SendRecord.result)
        if since is not None:
            stmt = stmt.where(SendRecord.created_at >= since)
        with self._session_factory() as session:
            counts = {result: count for result, count in session.execute(stmt)}
        counts["total"] = sum(counts.values())
        return counts

    def delete_older_than(self, days: int) -> int:
        cutoff = self._clock() - timedelta(days=days)
        with self._session_factory() as session:
            result = session.execute(delete(SendRecord).where(SendRecord.created_at < cutoff))
            session.commit()
            return result.rowcount or 0

    def mark_sent(
        self,
        *,
        routine_id: int,
        appointment_id: int,
        log_id: int | None,
        calculated_send_time: datetime | None,
        appointment_start_time: datetime | None,
        hours_before: int | None,
    ) -> bool:
        """Replace any prior mark for (routine, appointment) with a fresh one."""
        if not log_id:
            logger.warning(
                "Refusing to mark appointment %s for routine %s without a send log id",
                appointment_id,
                routine_id,
            )
            return False

        with self._session_factory() as session:
            session.execute(
                delete(RoutineSendMark).where(
                    RoutineSendMark.routine_id == routine_id,
                    RoutineSendMark.appointment_id == appointment_id,
                )
            )
            session.add(
                RoutineSendMark(
                    routine_id=routine_id,
                    appointment_id=appointment_id,
                    log_id=log_id,
                    sent_at=self._clock(),
                    calculated_send_time=calculated_send_time,
                    appointment_start_time=appointment_start_time,
                    routine_hours_before=hours_before,
                )
            )
            session.commit()
        return True

    def get_mark(self, routine_id: int, appointment_id: int) -> RoutineSendMark | None:
        stmt = select(RoutineSendMark).where(
            RoutineSendMark.routine_id == routine_id,
            RoutineSendMark.appointment_id == appointment_id,
        )
        with self._session_factory() as session:
            return session.scalar(stmt)
