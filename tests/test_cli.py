from __future__ import annotations

import json
from pathlib import Path

import pytest

from reminder_engine import cli
from reminder_engine.domain.errors import NotFoundError
from reminder_engine.domain.models import OUTCOME_DUPLICATE, OUTCOME_SENT, RunReport, SendOutcome


def test_run_command_writes_summary_and_passes_window(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys) -> None:
    called = {}
    report = RunReport(routine_id=1, routine_name="Lembrete 24h", mode="scheduled", total_found=2, successful=2)

    def fake_run(*, window_minutes):
        called["window_minutes"] = window_minutes
        return {"summary": {"routines": 1, "errors": []}, "reports": [report]}

    monkeypatch.setattr(cli, "run_active_routines", fake_run)

    summary = tmp_path / "out" / "summary.json"
    code = cli.main(["run", "--window-minutes", "10", "--summary-out", str(summary)])

    assert code == 0
    assert called["window_minutes"] == 10
    written = json.loads(summary.read_text())
    assert written["reports"][0]["successful"] == 2
    assert json.loads(capsys.readouterr().out)["routines"] == 1


def test_run_command_exits_nonzero_when_a_routine_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        cli,
        "run_active_routines",
        lambda *, window_minutes: {"summary": {"errors": [{"routine_id": 1, "error_message": "boom"}]}, "reports": []},
    )

    assert cli.main(["run"]) == 1


def test_force_command_reports_routine_run(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(
        cli,
        "force_routine",
        lambda routine_id: RunReport(routine_id=routine_id, routine_name="Manual", mode="forced", successful=3),
    )

    assert cli.main(["force", "--routine-id", "7"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["routine_id"] == 7
    assert payload["mode"] == "forced"


def test_send_command_maps_no_force_and_outcome(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_send(appointment_id, *, template_id, force_send):
        calls.append((appointment_id, template_id, force_send))
        status = OUTCOME_SENT if force_send else OUTCOME_DUPLICATE
        return SendOutcome(status=status, appointment_id=appointment_id)

    monkeypatch.setattr(cli, "send_manual", fake_send)

    assert cli.main(["send", "--appointment-id", "5", "--template-id", "2"]) == 0
    assert cli.main(["send", "--appointment-id", "5", "--no-force"]) == 1
    assert calls == [(5, 2, True), (5, None, False)]


def test_engine_errors_exit_with_code_two(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    def missing(routine_id):
        raise NotFoundError(f"Routine {routine_id} not found")

    monkeypatch.setattr(cli, "force_routine", missing)

    assert cli.main(["force", "--routine-id", "99"]) == 2
    assert "Routine 99 not found" in capsys.readouterr().out


def test_init_db_command(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(cli, "initialize_database", lambda: "sqlite:///tmp/reminders.db")

    assert cli.main(["init-db"]) == 0
    assert "sqlite:///tmp/reminders.db" in capsys.readouterr().out


def test_purge_command(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(cli, "purge", lambda days: {"send_records": 4, "execution_logs": 1, "days": days})

    assert cli.main(["purge", "--days", "30"]) == 0
    assert json.loads(capsys.readouterr().out)["days"] == 30


def test_session_status_uses_gateway_client(monkeypatch: pytest.MonkeyPatch, make_client, gateway_config, gateway, capsys) -> None:
    gateway.queue((200, {"status": "CONNECTED"}))
    client = make_client(gateway_config)
    monkeypatch.setattr(cli, "resolve_gateway_config", lambda: gateway_config)
    monkeypatch.setattr(cli, "DeliveryClient", lambda config: client)

    assert cli.main(["session", "status"]) == 0
    assert json.loads(capsys.readouterr().out) == {"status": "CONNECTED"}
    assert gateway.requests[0].url.path == "/api/clinic/status-session"


def test_token_generate_prints_token(monkeypatch: pytest.MonkeyPatch, make_client, gateway_config, gateway, capsys) -> None:
    gateway.queue((201, {"status": "success", "token": "fresh-token"}))
    client = make_client(gateway_config)
    monkeypatch.setattr(cli, "resolve_gateway_config", lambda: gateway_config)
    monkeypatch.setattr(cli, "DeliveryClient", lambda config: client)

    assert cli.main(["token", "generate"]) == 0
    assert "fresh-token" in capsys.readouterr().out


def test_stats_command_reads_ledgers(monkeypatch: pytest.MonkeyPatch, components, seed, capsys) -> None:
    routine = seed.routine()
    monkeypatch.setattr(cli, "build_components", lambda: components)

    assert cli.main(["stats", "--routine-id", str(routine.id)]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["sends"] == {"total": 0}
    assert payload["executions"]["total_executions"] == 0


def test_unknown_command_exits() -> None:
    with pytest.raises(SystemExit):
        cli.main(["bogus"])


def test_purge_rejects_non_positive_days(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(cli, "purge", lambda days: pytest.fail("purge must not run"))

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["purge", "--days", "0"])

    assert excinfo.value.code == 2
    assert "at least one day" in capsys.readouterr().err


def test_force_help_states_lock_is_per_process(capsys) -> None:
    with pytest.raises(SystemExit):
        cli.main(["force", "--help"])

    help_text = " ".join(capsys.readouterr().out.split())
    assert "only covers this process" in help_text
