"""Routine run workflow: scan, dispatch each candidate, finalize the execution log."""

from __future__ import annotations

import enum
import logging
from datetime import datetime

from sqlalchemy import select

from reminder_engine.db.models import RoutinePolicy
from reminder_engine.db.session import SessionFactory
from reminder_engine.domain.errors import NotFoundError, RoutineBusyError
from reminder_engine.domain.models import (
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_NO_TEMPLATE,
    SEND_TYPE_ROUTINE,
    DueAppointment,
    RunReport,
    SendOutcome,
)
from reminder_engine.ledger.execution_ledger import CONTEXT_AUTOMATED, CONTEXT_MANUAL, ExecutionLedger, ExecutionRun
from reminder_engine.ledger.send_ledger import SendLedger
from reminder_engine.orchestration.locks import RoutineLocks
from reminder_engine.orchestration.send import AppointmentSender
from reminder_engine.scanning.due_window import DueWindowScanner
from reminder_engine.utils.logging import get_structured_logger, log_workflow_event

logger = logging.getLogger(__name__)

MODE_SCHEDULED = "scheduled"
MODE_FORCED = "forced"
SKIP_REASONS = (OUTCOME_NO_TEMPLATE, OUTCOME_DUPLICATE)


class RunState(str, enum.Enum):
    IDLE = "IDLE"
    SCANNING = "SCANNING"
    DISPATCHING = "DISPATCHING"
    FINALIZING = "FINALIZING"


class RoutineRunner:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        scanner: DueWindowScanner,
        sender: AppointmentSender,
        send_ledger: SendLedger,
        execution_ledger: ExecutionLedger,
        locks: RoutineLocks | None = None,
        window_minutes: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self.scanner = scanner
        self.sender = sender
        self.send_ledger = send_ledger
        self.execution_ledger = execution_ledger
        self.locks = locks or RoutineLocks()
        self.window_minutes = window_minutes
        self.state = RunState.IDLE
        self._events = get_structured_logger()

    def get_routine(self, routine_id: int) -> RoutinePolicy:
        with self._session_factory() as session:
            routine = session.get(RoutinePolicy, routine_id)
        if routine is None:
            raise NotFoundError(f"Routine {routine_id} not found")
        return routine

    def active_routines(self) -> list[RoutinePolicy]:
        stmt = select(RoutinePolicy).where(RoutinePolicy.active.is_(True)).order_by(RoutinePolicy.id.asc())
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def run(
        self,
        routine: RoutinePolicy,
        *,
        window_minutes: int | None = None,
        now: datetime | None = None,
    ) -> RunReport:
        window = self.window_minutes if window_minutes is None else window_minutes
        return self._execute(
            routine,
            MODE_SCHEDULED,
            lambda: self.scanner.find_due(routine, window, now=now),
        )

    def run_forced(self, routine: RoutinePolicy, *, now: datetime | None = None) -> RunReport:
        """Send to every unmarked upcoming appointment regardless of the time window."""
        return self._execute(
            routine,
            MODE_FORCED,
            lambda: self.scanner.find_upcoming(routine, now=now),
        )

    def run_active(self, *, window_minutes: int | None = None, now: datetime | None = None) -> list[RunReport]:
        reports: list[RunReport] = []
        for routine in self.active_routines():
            try:
                reports.append(self.run(routine, window_minutes=window_minutes, now=now))
            except Exception as exc:  # one routine must not stop the others
                logger.exception("Routine %s (%s) failed", routine.id, routine.name)
                reports.append(
                    RunReport(
                        routine_id=routine.id,
                        routine_name=routine.name,
                        mode=MODE_SCHEDULED,
                        error_message=str(exc),
                    )
                )
        return reports

    def _execute(self, routine: RoutinePolicy, mode: str, scan) -> RunReport:
        report = RunReport(routine_id=routine.id, routine_name=routine.name, mode=mode)
        try:
            with self.locks.hold(routine.id):
                self._run_locked(routine, mode, scan, report)
        except RoutineBusyError:
            logger.warning("Routine %s is already running; skipping this trigger", routine.id)
            report.skipped_busy = True
        finally:
            self.state = RunState.IDLE
        return report

    def _run_locked(self, routine: RoutinePolicy, mode: str, scan, report: RunReport) -> None:
        # Raises ConfigurationError before anything is written.
        self.sender.client.ensure_ready()

        self.state = RunState.SCANNING
        candidates: list[DueAppointment] = scan()
        report.total_found = len(candidates)

        context = CONTEXT_MANUAL if mode == MODE_FORCED else CONTEXT_AUTOMATED
        run = self.execution_ledger.start(routine, candidates, context=context)
        if run is None:
            logger.info("Routine %s: no appointments due", routine.id)
            return
        report.execution_log_id = run.log_id

        self.state = RunState.DISPATCHING
        try:
            for appointment in candidates:
                self._dispatch_one(routine, appointment, run, report)
        except Exception as exc:
            self.state = RunState.FINALIZING
            report.error_message = str(exc)
            report.execution_status = run.finish(str(exc))
            raise

        self.state = RunState.FINALIZING
        report.execution_status = run.finish()
        logger.info(
            "Routine %s (%s) finished: found=%s successful=%s failed=%s skipped=%s status=%s",
            routine.id,
            mode,
            report.total_found,
            report.successful,
            report.failed,
            report.skipped,
            report.execution_status,
        )

    def _dispatch_one(
        self,
        routine: RoutinePolicy,
        appointment: DueAppointment,
        run: ExecutionRun,
        report: RunReport,
    ) -> None:
        try:
            outcome = self.sender.send(appointment.appointment_id, routine.template_id, SEND_TYPE_ROUTINE)
            if outcome.success:
                self.send_ledger.mark_sent(
                    routine_id=routine.id,
                    appointment_id=appointment.appointment_id,
                    log_id=outcome.log_id,
                    calculated_send_time=appointment.send_time_local.replace(tzinfo=None)
                    if appointment.send_time_local
                    else None,
                    appointment_start_time=appointment.start_datetime,
                    hours_before=routine.hours_before,
                )
        except Exception as exc:  # broad so one recipient never aborts the batch
            logger.exception("Unexpected error sending appointment %s", appointment.appointment_id)
            outcome = SendOutcome(
                status=OUTCOME_FAILED,
                appointment_id=appointment.appointment_id,
                message=str(exc),
                error_code=type(exc).__name__.upper(),
            )

        log_workflow_event(
            self._events,
            workflow_step="routine_dispatch",
            routine_id=routine.id,
            appointment_id=appointment.appointment_id,
            customer_name=appointment.customer_name,
            status=outcome.status.lower(),
            log_id=outcome.log_id,
            error_code=outcome.error_code,
            error_message=None if outcome.success else outcome.message,
            message=outcome.message,
        )

        if outcome.status in SKIP_REASONS:
            run.record_skip(appointment, outcome.status)
            report.count_skip(outcome.status)
            return

        run.record_outcome(appointment, outcome.success, outcome)
        if outcome.success:
            report.successful += 1
        else:
            report.failed += 1
