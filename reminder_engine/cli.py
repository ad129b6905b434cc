"""Top-level reminder engine command line interface."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence

from reminder_engine.adapters.gateway_client import DeliveryClient
from reminder_engine.domain.errors import ReminderEngineError
from reminder_engine.jobs.purge_logs import positive_days, purge
from reminder_engine.jobs.tasks import (
    build_components,
    force_routine,
    initialize_database,
    resolve_gateway_config,
    run_active_routines,
    send_manual,
)
from reminder_engine.reporting.summary import write_summary

SESSION_ACTIONS = ("status", "start", "close", "logout")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reminder-engine", description="Appointment reminder operations CLI")
    parser.add_argument("--verbose", action="store_true", help="Log at INFO level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run every active routine once")
    run_parser.add_argument("--window-minutes", type=int, help="Override the due window width")
    run_parser.add_argument("--summary-out", type=Path, help="Optional summary artifact path")
    run_parser.set_defaults(handler=_handle_run)

    force_parser = subparsers.add_parser(
        "force",
        help="Send a routine to all unmarked upcoming appointments",
        description=(
            "Send a routine to all unmarked upcoming appointments. The routine lock only "
            "covers this process; do not force a routine while the scheduler process is sweeping it."
        ),
    )
    force_parser.add_argument("--routine-id", type=int, required=True)
    force_parser.set_defaults(handler=_handle_force)

    send_parser = subparsers.add_parser("send", help="Send the status notification for one appointment")
    send_parser.add_argument("--appointment-id", type=int, required=True)
    send_parser.add_argument("--template-id", type=int)
    send_parser.add_argument(
        "--no-force",
        action="store_true",
        help="Apply duplicate prevention instead of always sending",
    )
    send_parser.set_defaults(handler=_handle_send)

    session_parser = subparsers.add_parser("session", help="Gateway session commands")
    session_parser.add_argument("action", choices=SESSION_ACTIONS)
    session_parser.set_defaults(handler=_handle_session)

    token_parser = subparsers.add_parser("token", help="Gateway token commands")
    token_subparsers = token_parser.add_subparsers(dest="token_command", required=True)
    generate_parser = token_subparsers.add_parser("generate", help="Generate a bearer token from the secret key")
    generate_parser.set_defaults(handler=_handle_token_generate)

    init_parser = subparsers.add_parser("init-db", help="Create the database tables")
    init_parser.set_defaults(handler=_handle_init_db)

    stats_parser = subparsers.add_parser("stats", help="Show send and execution statistics")
    stats_parser.add_argument("--routine-id", type=int)
    stats_parser.set_defaults(handler=_handle_stats)

    purge_parser = subparsers.add_parser("purge", help="Delete ledger rows older than the retention window")
    purge_parser.add_argument("--days", type=positive_days, required=True)
    purge_parser.set_defaults(handler=_handle_purge)

    return parser


def _handle_run(args: argparse.Namespace) -> int:
    result = run_active_routines(window_minutes=args.window_minutes)
    summary = result["summary"]
    if args.summary_out:
        write_summary(args.summary_out, summary, result["reports"])
    _print_json(summary)
    return 1 if summary["errors"] else 0


def _handle_force(args: argparse.Namespace) -> int:
    report = force_routine(args.routine_id)
    _print_json(asdict(report))
    return 0 if report.error_message is None else 1


def _handle_send(args: argparse.Namespace) -> int:
    outcome = send_manual(args.appointment_id, template_id=args.template_id, force_send=not args.no_force)
    _print_json(asdict(outcome))
    return 0 if outcome.success else 1


def _handle_session(args: argparse.Namespace) -> int:
    with DeliveryClient(resolve_gateway_config()) as client:
        if args.action == "status":
            response = client.session_status()
        elif args.action == "start":
            response = client.start_session()
        elif args.action == "close":
            response = client.close_session()
        else:
            response = client.logout_session()
    _print_json(response.payload)
    return 0


def _handle_token_generate(args: argparse.Namespace) -> int:
    with DeliveryClient(resolve_gateway_config()) as client:
        response = client.generate_token()
    token = response.payload.get("token")
    if token:
        print("Token generated; store it as WPP_TOKEN.")
        print(token)
        return 0
    _print_json(response.payload)
    return 1


def _handle_init_db(args: argparse.Namespace) -> int:
    url = initialize_database()
    print(f"Initialized database {url}")
    return 0


def _handle_stats(args: argparse.Namespace) -> int:
    with build_components() as components:
        payload = {
            "sends": components.send_ledger.stats(),
            "executions": components.execution_ledger.routine_stats(args.routine_id),
        }
    _print_json(payload)
    return 0


def _handle_purge(args: argparse.Namespace) -> int:
    _print_json(purge(args.days))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        return args.handler(args)
    except ReminderEngineError as exc:
        print(f"error: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
