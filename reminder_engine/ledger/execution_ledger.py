"""Per-run audit records for reminder routines."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, func, select

from reminder_engine.db.models import ExecutionLog, MessageTemplate, RoutinePolicy
from reminder_engine.db.session import SessionFactory
from reminder_engine.domain.models import (
    EXECUTION_FAILURE,
    EXECUTION_PARTIAL_SUCCESS,
    EXECUTION_PENDING,
    EXECUTION_SUCCESS,
    RESULT_FAILURE,
    RESULT_SUCCESS,
    DueAppointment,
    SendOutcome,
)
from reminder_engine.utils.clock import utc_now

logger = logging.getLogger(__name__)

CONTEXT_AUTOMATED = "automated"
CONTEXT_MANUAL = "manual"
PREVIEW_LIMIT = 10

Clock = Callable[[], datetime]


def derive_execution_status(successful: int, failed: int, error_message: str | None = None) -> str:
    if error_message:
        return EXECUTION_FAILURE
    if failed > 0 and successful > 0:
        return EXECUTION_PARTIAL_SUCCESS
    if failed > 0:
        return EXECUTION_FAILURE
    return EXECUTION_SUCCESS


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _preview(appointment: DueAppointment) -> dict[str, Any]:
    return {
        "id": appointment.appointment_id,
        "start_datetime": _isoformat(appointment.start_datetime),
        "start_local": _isoformat(appointment.start_local),
        "customer_timezone": appointment.customer_timezone,
        "send_time_local": _isoformat(appointment.send_time_local),
    }


class ExecutionRun:
    """Handle for one in-flight execution log.

    Only the routine runner holding the routine lock writes through a handle,
    so the read-modify-write updates below never interleave.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        log_id: int,
        *,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.log_id = log_id
        self._clock = clock
        self._monotonic = monotonic
        self._started = monotonic()
        self.successful = 0
        self.failed = 0
        self.status = EXECUTION_PENDING
        self.finished = False

    def _timestamp(self) -> str:
        return self._clock().isoformat(timespec="seconds")

    def record_outcome(self, appointment: DueAppointment, success: bool, send_result: SendOutcome | None) -> None:
        with self._session_factory() as session:
            log = session.get(ExecutionLog, self.log_id)
            if log is None:
                logger.warning("Execution log %s vanished; outcome for %s dropped", self.log_id, appointment.appointment_id)
                return

            client = {
                "customer_name": appointment.customer_name,
                "appointment_id": appointment.appointment_id,
                "appointment_datetime": _isoformat(appointment.start_datetime),
                "status": RESULT_SUCCESS if success else RESULT_FAILURE,
                "timestamp": self._timestamp(),
            }
            if not success and send_result is not None:
                client["error"] = send_result.message or "Send failed"

            details = dict(log.execution_details or {})
            send_results = list(details.get("send_results", []))
            send_results.append(
                {
                    "appointment_id": appointment.appointment_id,
                    "success": success,
                    "timestamp": self._timestamp(),
                    "log_id": send_result.log_id if send_result else None,
                    "http_status": send_result.http_status if send_result else None,
                    "response_summary": "Message sent successfully"
                    if success
                    else (send_result.message if send_result else "Send failed"),
                }
            )
            details["send_results"] = send_results

            log.clients_notified = [*(log.clients_notified or []), client]
            log.execution_details = details
            if success:
                log.successful_sends += 1
            else:
                log.failed_sends += 1
            session.commit()

        if success:
            self.successful += 1
        else:
            self.failed += 1

    def record_skip(self, appointment: DueAppointment, reason: str) -> None:
        with self._session_factory() as session:
            log = session.get(ExecutionLog, self.log_id)
            if log is None:
                return
            details = dict(log.execution_details or {})
            details["skipped"] = [
                *details.get("skipped", []),
                {"appointment_id": appointment.appointment_id, "reason": reason, "timestamp": self._timestamp()},
            ]
            log.execution_details = details
            session.commit()

    def finish(self, error_message: str | None = None) -> str:
        if self.finished:
            return self.status

        elapsed = round(self._monotonic() - self._started, 3)
        with self._session_factory() as session:
            log = session.get(ExecutionLog, self.log_id)
            if log is None:
                logger.warning("Execution log %s vanished before finish", self.log_id)
                self.finished = True
                return self.status
            self.status = derive_execution_status(log.successful_sends, log.failed_sends, error_message)
            log.execution_status = self.status
            log.execution_time_seconds = elapsed
            log.error_message = error_message
            session.commit()

        self.finished = True
        logger.info(
            "Execution log %s finished: status=%s successful=%s failed=%s elapsed=%ss",
            self.log_id,
            self.status,
            self.successful,
            self.failed,
            elapsed,
        )
        return self.status


class ExecutionLedger:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._monotonic = monotonic

    def start(
        self,
        routine: RoutinePolicy,
        candidates: list[DueAppointment],
        *,
        context: str = CONTEXT_AUTOMATED,
    ) -> ExecutionRun | None:
        """Open a PENDING log for a run; nothing is written for an empty batch."""
        if not candidates:
            return None

        with self._session_factory() as session:
            template_name = None
            if routine.template_id:
                template = session.get(MessageTemplate, routine.template_id)
                template_name = template.name if template else None

            log = ExecutionLog(
                routine_id=routine.id,
                routine_name=routine.name,
                execution_status=EXECUTION_PENDING,
                appointment_status=routine.status_to_match,
                template_id=routine.template_id,
                template_name=template_name,
                message_type="routine",
                total_appointments_found=len(candidates),
                successful_sends=0,
                failed_sends=0,
                clients_notified=[],
                execution_details={
                    "routine_config": {"hours_before": routine.hours_before, "active": routine.active},
                    "execution_context": context,
                    "appointments_preview": [_preview(item) for item in candidates[:PREVIEW_LIMIT]],
                },
                execution_datetime=self._clock(),
            )
            session.add(log)
            session.commit()
            log_id = log.id

        logger.info("Execution log %s started for routine %s (%s candidates)", log_id, routine.id, len(candidates))
        return ExecutionRun(self._session_factory, log_id, clock=self._clock, monotonic=self._monotonic)

    def get(self, log_id: int) -> ExecutionLog | None:
        with self._session_factory() as session:
            return session.get(ExecutionLog, log_id)

    def get_execution_logs(
        self,
        *,
        routine_id: int | None = None,
        execution_status: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = 100,
    ) -> list[ExecutionLog]:
        stmt = select(ExecutionLog)
        if routine_id is not None:
            stmt = stmt.where(ExecutionLog.routine_id == routine_id)
        if execution_status:
            stmt = stmt.where(ExecutionLog.execution_status == execution_status)
        if date_from is not None:
            stmt = stmt.where(ExecutionLog.execution_datetime >= date_from)
        if date_to is not None:
            stmt = stmt.where(ExecutionLog.execution_datetime <= date_to)
        stmt = stmt.order_by(ExecutionLog.execution_datetime.desc(), ExecutionLog.id.desc())
        if limit:
            stmt = stmt.limit(limit)

        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def routine_stats(
        self,
        routine_id: int | None = None,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        stmt = select(
            func.count(ExecutionLog.id),
            func.coalesce(func.sum(ExecutionLog.successful_sends), 0),
            func.coalesce(func.sum(ExecutionLog.failed_sends), 0),
            func.coalesce(func.sum(ExecutionLog.total_appointments_found), 0),
            func.avg(ExecutionLog.execution_time_seconds),
        )
        status_stmt = select(ExecutionLog.execution_status, func.count(ExecutionLog.id)).group_by(
            ExecutionLog.execution_status
        )
        filters = []
        if routine_id is not None:
            filters.append(ExecutionLog.routine_id == routine_id)
        if date_from is not None:
            filters.append(ExecutionLog.execution_datetime >= date_from)
        if date_to is not None:
            filters.append(ExecutionLog.execution_datetime <= date_to)
        if filters:
            stmt = stmt.where(*filters)
            status_stmt = status_stmt.where(*filters)

        with self._session_factory() as session:
            executions, successful, failed, found, avg_time = session.execute(stmt).one()
            by_status = {status: count for status, count in session.execute(status_stmt)}

        return {
            "routine_id": routine_id,
            "total_executions": executions,
            "total_appointments_found": int(found),
            "successful_sends": int(successful),
            "failed_sends": int(failed),
            "average_execution_time_seconds": round(float(avg_time), 3) if avg_time is not None else None,
            "by_status": by_status,
        }

    def cleanup_old_logs(self, days_to_keep: int = 90) -> int:
        cutoff = self._clock() - timedelta(days=days_to_keep)
        with self._session_factory() as session:
            result = session.execute(delete(ExecutionLog).where(ExecutionLog.execution_datetime < cutoff))
            session.commit()
            deleted = result.rowcount or 0
        logger.info("Removed %s execution logs older than %s days", deleted, days_to_keep)
        return deleted
