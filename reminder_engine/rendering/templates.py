"""Message template lookup and placeholder rendering."""

from __future__ import annotations

import logging
import re

from sqlalchemy import select

from reminder_engine.db.models import Appointment, Customer, MessageTemplate, Provider, Service
from reminder_engine.db.session import SessionFactory

logger = logging.getLogger(__name__)

FALLBACK_LANGUAGE = "en"
PT_BR_LANGUAGES = frozenset({"pt-BR", "pt_BR", "portuguese-br"})
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_.-]+)\s*\}\}")

WEEKDAYS_PT = (
    "Segunda-feira",
    "Terça-feira",
    "Quarta-feira",
    "Quinta-feira",
    "Sexta-feira",
    "Sábado",
    "Domingo",
)


class TemplateRepository:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def get(self, template_id: int) -> MessageTemplate | None:
        with self._session_factory() as session:
            return session.get(MessageTemplate, template_id)

    def get_by_status(self, status_key: str, *, language: str | None = None, enabled_only: bool = True) -> list[MessageTemplate]:
        stmt = select(MessageTemplate).where(MessageTemplate.status_key == status_key)
        if enabled_only:
            stmt = stmt.where(MessageTemplate.enabled.is_(True))
        if language:
            stmt = stmt.where(MessageTemplate.language == language)
        stmt = stmt.order_by(MessageTemplate.id.asc())
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def default_for_status(self, status_key: str, language: str | None = None) -> MessageTemplate | None:
        templates = self.get_by_status(status_key, language=language)
        if not templates and language and language != FALLBACK_LANGUAGE:
            templates = self.get_by_status(status_key, language=FALLBACK_LANGUAGE)
        return templates[0] if templates else None

    def resolve(
        self,
        status_key: str,
        selected_template_id: int | None = None,
        language: str | None = None,
    ) -> MessageTemplate | None:
        """Selected enabled template first, then the status default (English as last resort)."""
        if selected_template_id:
            template = self.get(selected_template_id)
            if template is not None and template.enabled:
                return template
            logger.warning("Selected template %s not found or disabled; using status default", selected_template_id)
        return self.default_for_status(status_key, language)


def extract_variables(text: str) -> list[str]:
    seen: list[str] = []
    for name in PLACEHOLDER_PATTERN.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def booking_link(booking_base_url: str, appointment_hash: str | None) -> str:
    if not booking_base_url or not appointment_hash:
        return ""
    return f"{booking_base_url.rstrip('/')}/appointments/book/{appointment_hash}"


def render(
    template: MessageTemplate,
    appointment: Appointment,
    customer: Customer | None,
    service: Service | None,
    provider: Provider | None,
    language: str | None = None,
    *,
    company_name: str = "",
    booking_base_url: str = "",
) -> str:
    """Substitute English and Portuguese placeholders in the template body.

    Unknown placeholders are left untouched.
    """
    start = appointment.start_datetime
    language = language or template.language or FALLBACK_LANGUAGE
    date_format = "%d/%m/%Y" if language in PT_BR_LANGUAGES else "%Y-%m-%d"
    appointment_date = start.strftime(date_format)
    appointment_time = start.strftime("%H:%M")

    first_name = customer.first_name if customer else ""
    full_name = f"{first_name} {customer.last_name if customer else ''}".strip()
    phone = (customer.phone_number if customer else None) or ""
    email = (customer.email if customer else None) or ""
    service_name = service.name if service else ""
    location = appointment.location or (service.location if service else None) or ""
    link = booking_link(booking_base_url, appointment.hash)

    values = {
        "client_name": full_name,
        "first_name": first_name,
        "phone": phone,
        "email": email,
        "appointment_date": appointment_date,
        "appointment_time": appointment_time,
        "service_name": service_name,
        "location": location,
        "link": link,
        "company_name": company_name,
        "nome_cliente": full_name,
        "primeiro_nome": first_name,
        "telefone": phone,
        "e-mail": email,
        "data_agendamento": appointment_date,
        "hora_agendamento": appointment_time,
        "dia_semana": WEEKDAYS_PT[start.weekday()],
        "nome_servico": service_name,
        "local": location,
        "nome_empresa": company_name,
    }
    if provider is not None and not location:
        values["location"] = values["local"] = provider.address or ""

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        return str(values[key])

    return PLACEHOLDER_PATTERN.sub(_substitute, template.body)
