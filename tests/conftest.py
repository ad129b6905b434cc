from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

import httpx
import pytest

from reminder_engine.adapters.gateway_client import DeliveryClient, GatewayConfig
from reminder_engine.db.models import Appointment, Customer, MessageTemplate, RoutinePolicy, Service
from reminder_engine.db.session import build_engine, build_session_factory, init_db
from reminder_engine.jobs.tasks import EngineConfig, build_components


class GatewayStub:
    """Scripted gateway: queued (status, body) tuples or exceptions, default 200."""

    def __init__(self) -> None:
        self.responses: list[Any] = []
        self.requests: list[httpx.Request] = []

    def queue(self, *items: Any) -> None:
        self.responses.extend(items)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if self.responses else (200, {"status": "success"})
        if isinstance(item, Exception):
            raise item
        status, body = item
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def sent_messages(self) -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path.endswith("/send-message")
        ]


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(host="http://wpp.local", port=21465, session="clinic", token="test-token", secret_key="s3cret")


@pytest.fixture
def make_client(gateway: GatewayStub, sleeps: list[float]) -> Callable[..., DeliveryClient]:
    def _make(config: GatewayConfig) -> DeliveryClient:
        http_client = httpx.Client(transport=httpx.MockTransport(gateway.handler))
        return DeliveryClient(config, http_client=http_client, sleep=sleeps.append)

    return _make


@pytest.fixture
def engine_config(gateway_config: GatewayConfig) -> EngineConfig:
    return EngineConfig(
        database_url="sqlite://",
        window_minutes=5,
        default_timezone="UTC",
        company_name="Clinica Exemplo",
        booking_base_url="https://book.example.com",
        gateway=gateway_config,
    )


@pytest.fixture
def components(engine_config, session_factory, gateway, sleeps):
    http_client = httpx.Client(transport=httpx.MockTransport(gateway.handler))
    built = build_components(
        engine_config,
        session_factory=session_factory,
        http_client=http_client,
        sleep=sleeps.append,
    )
    yield built
    built.close()
    http_client.close()


@pytest.fixture
def seed(session_factory):
    """Insert rows and return them detached from the session."""

    class Seeder:
        def _add(self, row):
            with session_factory() as session:
                session.add(row)
                session.commit()
            return row

        def customer(self, *, first_name="Ana", last_name="Souza", phone="11987654321", timezone="America/Sao_Paulo", language="pt-BR", **extra):
            return self._add(
                Customer(
                    first_name=first_name,
                    last_name=last_name,
                    phone_number=phone,
                    timezone=timezone,
                    language=language,
                    email=extra.get("email", "ana@example.com"),
                )
            )

        def service(self, *, name="Consulta", location="Sala 2"):
            return self._add(Service(name=name, location=location, duration=60))

        def template(self, *, status_key="Confirmed", body="Olá {{primeiro_nome}}, lembrete para {{data_agendamento}} às {{hora_agendamento}}.", language="pt-BR", enabled=True, name=None):
            return self._add(
                MessageTemplate(
                    name=name or f"{status_key} reminder",
                    status_key=status_key,
                    language=language,
                    body=body,
                    enabled=enabled,
                )
            )

        def routine(self, *, status="Confirmed", hours_before=24, template_id=None, active=True, name="Lembrete 24h"):
            return self._add(
                RoutinePolicy(
                    name=name,
                    status_to_match=status,
                    hours_before=hours_before,
                    template_id=template_id,
                    active=active,
                )
            )

        def appointment(self, customer, start: datetime, *, status="Confirmed", service=None, is_unavailability=False, hash_="abc123"):
            return self._add(
                Appointment(
                    start_datetime=start,
                    customer_id=customer.id if customer else None,
                    service_id=service.id if service else None,
                    status=status,
                    is_unavailability=is_unavailability,
                    hash=hash_,
                )
            )

    return Seeder()
