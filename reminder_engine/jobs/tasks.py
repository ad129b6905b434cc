"""Task functions executed by the scheduler and the CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx

from reminder_engine.adapters.gateway_client import DeliveryClient, GatewayConfig
from reminder_engine.db.session import SessionFactory, build_engine, build_session_factory, init_db
from reminder_engine.domain.models import RunReport, SendOutcome
from reminder_engine.events.dispatcher import AppointmentNotificationSubscriber, EventDispatcher
from reminder_engine.ledger.execution_ledger import ExecutionLedger
from reminder_engine.ledger.send_ledger import SendLedger
from reminder_engine.orchestration.locks import RoutineLocks
from reminder_engine.orchestration.send import AppointmentSender
from reminder_engine.rendering.templates import TemplateRepository
from reminder_engine.reporting.summary import compute_summary
from reminder_engine.scanning.due_window import DueWindowScanner
from reminder_engine.utils.idempotency import IdempotencyGuard
from reminder_engine.workflows.routine_run import RoutineRunner

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class EngineConfig:
    database_url: str = "sqlite:///reminder_engine.db"
    window_minutes: int = 5
    lookback_minutes: int = 0
    default_timezone: str = "UTC"
    duplicate_window_seconds: int = 300
    company_name: str = ""
    booking_base_url: str = ""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, value, default)
        return default


def resolve_gateway_config() -> GatewayConfig:
    port = os.getenv("WPP_PORT", "21465").strip()
    return GatewayConfig(
        host=os.getenv("WPP_HOST", "http://localhost"),
        port=int(port) if port.isdigit() else None,
        session=os.getenv("WPP_SESSION", "default"),
        secret_key=os.getenv("WPP_SECRET_KEY") or None,
        token=os.getenv("WPP_TOKEN") or None,
        enabled=env_bool("WPP_ENABLED", True),
        wait_qr=env_bool("WPP_WAIT_QR", True),
        timeout_seconds=float(env_int("WPPCONNECT_TIMEOUT", 30)),
        default_country_code=os.getenv("WPP_DEFAULT_COUNTRY_CODE", "55"),
        max_attempts=env_int("WPP_MAX_ATTEMPTS", 3),
    )


def _resolve_config(*, window_minutes: int | None = None) -> EngineConfig:
    config = EngineConfig(
        database_url=os.getenv("REMINDER_DATABASE_URL", "sqlite:///reminder_engine.db"),
        window_minutes=window_minutes if window_minutes is not None else env_int("REMINDER_WINDOW_MINUTES", 5),
        lookback_minutes=env_int("REMINDER_LOOKBACK_MINUTES", 0),
        default_timezone=os.getenv("REMINDER_DEFAULT_TIMEZONE", "UTC"),
        duplicate_window_seconds=env_int("REMINDER_DUPLICATE_WINDOW_SECONDS", 300),
        company_name=os.getenv("REMINDER_COMPANY_NAME", ""),
        booking_base_url=os.getenv("REMINDER_BOOKING_BASE_URL", ""),
        gateway=resolve_gateway_config(),
    )
    logger.info(
        "Resolved engine config (window_minutes=%s, lookback_minutes=%s, default_timezone=%s, gateway_enabled=%s)",
        config.window_minutes,
        config.lookback_minutes,
        config.default_timezone,
        config.gateway.enabled,
    )
    return config


@dataclass(slots=True)
class Components:
    config: EngineConfig
    session_factory: SessionFactory
    client: DeliveryClient
    send_ledger: SendLedger
    execution_ledger: ExecutionLedger
    scanner: DueWindowScanner
    templates: TemplateRepository
    sender: AppointmentSender
    runner: RoutineRunner
    dispatcher: EventDispatcher
    _engine: Any = None

    def close(self) -> None:
        self.client.close()
        if self._engine is not None:
            self._engine.dispose()

    def __enter__(self) -> Components:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_components(
    config: EngineConfig | None = None,
    *,
    session_factory: SessionFactory | None = None,
    http_client: httpx.Client | None = None,
    sleep: Callable[[float], None] | None = None,
    locks: RoutineLocks | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Components:
    """Wire one invocation's object graph from a configuration snapshot."""
    config = config or _resolve_config()
    engine = None
    if session_factory is None:
        engine = build_engine(config.database_url)
        session_factory = build_session_factory(engine)

    client_kwargs: dict[str, Any] = {"http_client": http_client}
    if sleep is not None:
        client_kwargs["sleep"] = sleep
    client = DeliveryClient(config.gateway, **client_kwargs)

    send_ledger = SendLedger(session_factory)
    execution_ledger = ExecutionLedger(session_factory)
    scanner_kwargs: dict[str, Any] = {}
    if clock is not None:
        scanner_kwargs["clock"] = clock
    scanner = DueWindowScanner(
        session_factory,
        default_timezone=config.default_timezone,
        lookback_minutes=config.lookback_minutes,
        **scanner_kwargs,
    )
    templates = TemplateRepository(session_factory)
    sender = AppointmentSender(
        session_factory,
        templates=templates,
        send_ledger=send_ledger,
        guard=IdempotencyGuard(send_ledger, window_seconds=config.duplicate_window_seconds),
        client=client,
        company_name=config.company_name,
        booking_base_url=config.booking_base_url,
    )
    runner = RoutineRunner(
        session_factory,
        scanner=scanner,
        sender=sender,
        send_ledger=send_ledger,
        execution_ledger=execution_ledger,
        locks=locks,
        window_minutes=config.window_minutes,
    )
    dispatcher = EventDispatcher([AppointmentNotificationSubscriber(sender)])

    return Components(
        config=config,
        session_factory=session_factory,
        client=client,
        send_ledger=send_ledger,
        execution_ledger=execution_ledger,
        scanner=scanner,
        templates=templates,
        sender=sender,
        runner=runner,
        dispatcher=dispatcher,
        _engine=engine,
    )


def initialize_database(config: EngineConfig | None = None) -> str:
    config = config or _resolve_config()
    engine = build_engine(config.database_url)
    try:
        init_db(engine)
    finally:
        engine.dispose()
    logger.info("Database initialized at %s", engine.url.render_as_string(hide_password=True))
    return config.database_url


def run_active_routines(
    *,
    window_minutes: int | None = None,
    locks: RoutineLocks | None = None,
    components: Components | None = None,
) -> dict[str, Any]:
    """Run every active routine once and return a summary of the reports."""
    owned = components is None
    components = components or build_components(_resolve_config(window_minutes=window_minutes), locks=locks)
    try:
        reports = components.runner.run_active(window_minutes=window_minutes)
    finally:
        if owned:
            components.close()

    summary = compute_summary(reports)
    logger.info(
        "Routine sweep completed: routines=%s found=%s successful=%s failed=%s skipped=%s",
        summary["routines"],
        summary["total_found"],
        summary["successful_sends"],
        summary["failed_sends"],
        summary["skipped"]["total"],
    )
    return {"summary": summary, "reports": reports}


def force_routine(routine_id: int, *, components: Components | None = None) -> RunReport:
    owned = components is None
    components = components or build_components()
    try:
        routine = components.runner.get_routine(routine_id)
        return components.runner.run_forced(routine)
    finally:
        if owned:
            components.close()


def send_manual(
    appointment_id: int,
    *,
    template_id: int | None = None,
    force_send: bool = True,
    components: Components | None = None,
) -> SendOutcome:
    owned = components is None
    components = components or build_components()
    try:
        return components.sender.send_manual(appointment_id, template_id, force_send)
    finally:
        if owned:
            components.close()
