from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from reminder_engine.db.models import Appointment, ExecutionLog, RoutineSendMark, SendRecord
from reminder_engine.domain.errors import ConfigurationError
from reminder_engine.domain.models import (
    EXECUTION_FAILURE,
    EXECUTION_PARTIAL_SUCCESS,
    EXECUTION_SUCCESS,
    RESULT_FAILURE,
    RESULT_SUCCESS,
)
from reminder_engine.jobs.tasks import build_components
from reminder_engine.ledger.execution_ledger import ExecutionRun
from reminder_engine.workflows.routine_run import RunState

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
SCAN_AT = datetime(2025, 1, 1, 10, 0, tzinfo=SAO_PAULO)


def _rows(session_factory, model):
    with session_factory() as session:
        return list(session.query(model).order_by(model.id))


def test_scenario_a_exact_boundary_send_marks_and_is_not_reselected(components, session_factory, seed, gateway) -> None:
    customer = seed.customer(timezone="America/Sao_Paulo")
    template = seed.template(status_key="Confirmed")
    routine = seed.routine(status="Confirmed", hours_before=24, template_id=template.id)
    appointment = seed.appointment(customer, datetime(2025, 1, 2, 10, 0))

    report = components.runner.run(routine, window_minutes=5, now=SCAN_AT)

    assert report.total_found == 1
    assert report.successful == 1
    assert report.execution_status == EXECUTION_SUCCESS
    records = _rows(session_factory, SendRecord)
    assert [record.result for record in records] == [RESULT_SUCCESS]
    assert records[0].send_type == "routine"
    assert gateway.sent_messages()[0] == {
        "phone": "5511987654321",
        "message": "Olá Ana, lembrete para 02/01/2025 às 10:00.",
    }

    mark = components.send_ledger.get_mark(routine.id, appointment.id)
    assert mark.log_id == records[0].id
    assert mark.appointment_start_time == datetime(2025, 1, 2, 10, 0)
    assert mark.routine_hours_before == 24
    assert mark.calculated_send_time == datetime(2025, 1, 1, 10, 0)
    preview = components.execution_ledger.get(report.execution_log_id).execution_details["appointments_preview"]
    assert preview[0]["start_local"] == "2025-01-02T10:00:00-03:00"

    again = components.runner.run(routine, window_minutes=5, now=SCAN_AT + timedelta(minutes=1))
    assert again.total_found == 0
    assert again.execution_log_id is None
    assert len(_rows(session_factory, SendRecord)) == 1
    assert len(_rows(session_factory, ExecutionLog)) == 1
    assert components.runner.state == RunState.IDLE


def test_scenario_b_unauthorized_fails_one_and_continues(components, session_factory, seed, gateway, sleeps) -> None:
    first = seed.customer(first_name="Ana", timezone="UTC", phone="11911112222")
    second = seed.customer(first_name="Bruno", timezone="UTC", phone="11933334444")
    template = seed.template(status_key="Confirmed")
    routine = seed.routine(hours_before=1, template_id=template.id)
    failing = seed.appointment(first, datetime(2025, 1, 1, 13, 0))
    succeeding = seed.appointment(second, datetime(2025, 1, 1, 13, 2))
    gateway.queue((401, {"message": "Unauthorized"}), (200, {"status": "success"}))

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert (report.successful, report.failed) == (1, 1)
    assert report.execution_status == EXECUTION_PARTIAL_SUCCESS
    assert sleeps == []

    records = {record.appointment_id: record for record in _rows(session_factory, SendRecord)}
    assert records[failing.id].result == RESULT_FAILURE
    assert records[failing.id].error_code == "SEND_ERROR"
    assert records[failing.id].http_status == 401
    assert records[succeeding.id].result == RESULT_SUCCESS

    log = components.execution_ledger.get(report.execution_log_id)
    assert (log.successful_sends, log.failed_sends) == (1, 1)
    assert components.send_ledger.get_mark(routine.id, failing.id) is None
    assert components.send_ledger.get_mark(routine.id, succeeding.id) is not None


def test_all_failures_finalize_as_failure(components, seed, gateway) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))
    gateway.queue((400, {"message": "Invalid number"}))

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert report.failed == 1
    assert report.execution_status == EXECUTION_FAILURE


def test_reschedule_readmits_and_replaces_mark(components, session_factory, seed) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    appointment = seed.appointment(customer, datetime(2025, 1, 1, 13, 0))

    components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    with session_factory() as session:
        row = session.get(Appointment, appointment.id)
        row.start_datetime = datetime(2025, 1, 1, 15, 0)
        session.commit()

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 14, 0, tzinfo=timezone.utc))

    assert report.successful == 1
    marks = _rows(session_factory, RoutineSendMark)
    assert len(marks) == 1
    assert marks[0].appointment_start_time == datetime(2025, 1, 1, 15, 0)
    assert len(_rows(session_factory, SendRecord)) == 2


def test_missing_template_is_skipped_not_counted(components, session_factory, seed, gateway) -> None:
    customer = seed.customer(timezone="UTC")
    routine = seed.routine(status="Confirmed", hours_before=1)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert report.skipped == {"NO_TEMPLATE": 1}
    assert (report.successful, report.failed) == (0, 0)
    assert report.execution_status == EXECUTION_SUCCESS
    assert _rows(session_factory, SendRecord) == []
    assert gateway.sent_messages() == []
    log = components.execution_ledger.get(report.execution_log_id)
    assert log.execution_details["skipped"][0]["reason"] == "NO_TEMPLATE"


def test_missing_phone_counts_as_failure(components, session_factory, seed) -> None:
    customer = seed.customer(timezone="UTC", phone=None)
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert report.failed == 1
    assert report.execution_status == EXECUTION_FAILURE
    assert _rows(session_factory, SendRecord) == []


def test_unexpected_error_for_one_recipient_does_not_stop_batch(components, seed, monkeypatch) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    broken = seed.appointment(customer, datetime(2025, 1, 1, 13, 0))
    seed.appointment(customer, datetime(2025, 1, 1, 13, 1))

    original_send = components.sender.send

    def flaky_send(appointment_id, *args, **kwargs):
        if appointment_id == broken.id:
            raise RuntimeError("renderer exploded")
        return original_send(appointment_id, *args, **kwargs)

    monkeypatch.setattr(components.sender, "send", flaky_send)

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert (report.successful, report.failed) == (1, 1)
    log = components.execution_ledger.get(report.execution_log_id)
    assert log.clients_notified[0]["error"] == "renderer exploded"


def test_run_level_error_finalizes_log_then_reraises(components, seed, monkeypatch) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))

    def broken_record(self, appointment, success, send_result):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(ExecutionRun, "record_outcome", broken_record)

    with pytest.raises(RuntimeError, match="ledger unavailable"):
        components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    logs = components.execution_ledger.get_execution_logs(routine_id=routine.id)
    assert logs[0].execution_status == EXECUTION_FAILURE
    assert logs[0].error_message == "ledger unavailable"
    assert components.runner.state == RunState.IDLE


def test_configuration_error_leaves_no_execution_log(engine_config, session_factory, seed, gateway) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))
    config = replace(engine_config, gateway=replace(engine_config.gateway, token=None))

    with build_components(config, session_factory=session_factory) as components:
        with pytest.raises(ConfigurationError):
            components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert _rows(session_factory, ExecutionLog) == []
    assert gateway.requests == []


def test_busy_routine_is_skipped(components, session_factory, seed) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))

    with components.runner.locks.hold(routine.id):
        assert components.runner.locks.is_held(routine.id)
        report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert report.skipped_busy is True
    assert not components.runner.locks.is_held(routine.id)
    assert report.total_found == 0
    assert _rows(session_factory, ExecutionLog) == []


def test_forced_run_sends_all_unmarked_upcoming_in_start_order(components, session_factory, seed, gateway) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template(body="{{client_name}} {{appointment_date}}", language="en")
    routine = seed.routine(hours_before=24, template_id=template.id)
    later = seed.appointment(customer, datetime(2025, 1, 9, 9, 0))
    sooner = seed.appointment(customer, datetime(2025, 1, 4, 9, 0))

    report = components.runner.run_forced(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert report.successful == 2
    assert [item["appointment_id"] for item in components.execution_ledger.get(report.execution_log_id).clients_notified] == [
        sooner.id,
        later.id,
    ]
    assert components.execution_ledger.get(report.execution_log_id).execution_details["execution_context"] == "manual"

    again = components.runner.run_forced(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))
    assert again.total_found == 0
    assert len(gateway.sent_messages()) == 2


def test_run_active_isolates_routine_failures(components, seed, monkeypatch) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    broken = seed.routine(hours_before=1, template_id=template.id, name="Quebrada")
    healthy = seed.routine(hours_before=1, template_id=template.id, name="Saudavel")
    seed.routine(hours_before=1, template_id=template.id, name="Inativa", active=False)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))

    original_find_due = components.scanner.find_due

    def find_due(routine, window_minutes=5, *, now=None):
        if routine.id == broken.id:
            raise RuntimeError("scan failed")
        return original_find_due(routine, window_minutes, now=now)

    monkeypatch.setattr(components.scanner, "find_due", find_due)

    reports = components.runner.run_active(now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert [report.routine_id for report in reports] == [broken.id, healthy.id]
    assert reports[0].error_message == "scan failed"
    assert reports[1].successful == 1


def test_unexpected_delivery_error_closes_send_record_as_failure(components, session_factory, seed, gateway) -> None:
    customer = seed.customer(timezone="UTC")
    template = seed.template()
    routine = seed.routine(hours_before=1, template_id=template.id)
    seed.appointment(customer, datetime(2025, 1, 1, 13, 0))
    gateway.queue(ValueError("unparseable gateway host"))

    report = components.runner.run(routine, now=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))

    assert report.failed == 1
    records = _rows(session_factory, SendRecord)
    assert [(record.result, record.error_code) for record in records] == [(RESULT_FAILURE, "SEND_ERROR")]
    assert records[0].error_message == "unparseable gateway host"
