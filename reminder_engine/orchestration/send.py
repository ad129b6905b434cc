from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from reminder_engine.adapters.gateway_client import DeliveryClient
from reminder_engine.db.models import Appointment, Customer, MessageTemplate, Provider, Service
from reminder_engine.db.session import SessionFactory
from reminder_engine.domain.errors import DeliveryError, NotFoundError, TemplateResolutionError
from reminder_engine.domain.models import (
    ERROR_CODE_INVALID_PHONE,
    ERROR_CODE_MISSING_PHONE,
    ERROR_CODE_SEND,
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_NO_TEMPLATE,
    OUTCOME_SENT,
    RESULT_FAILURE,
    RESULT_SUCCESS,
    SEND_TYPE_MANUAL,
    SEND_TYPE_ON_CREATE,
    SEND_TYPE_ON_UPDATE,
    SendOutcome,
)
from reminder_engine.ledger.send_ledger import SendLedger
from reminder_engine.rendering.templates import TemplateRepository, render
from reminder_engine.utils.idempotency import IdempotencyGuard, build_body_hash
from reminder_engine.utils.logging import get_structured_logger, log_workflow_event
from reminder_engine.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

CUSTOM_STATUS_KEY = "Custom"


@dataclass(slots=True)
class AppointmentSnapshot:
    """The appointment fields that decide whether an update warrants a notice."""

    appointment_id: int
    status: str
    start_datetime: datetime | None
    template_id: int | None = None

    @classmethod
    def from_model(cls, appointment: Appointment, template_id: int | None = None) -> AppointmentSnapshot:
        return cls(
            appointment_id=appointment.id,
            status=appointment.status,
            start_datetime=appointment.start_datetime,
            template_id=template_id,
        )


@dataclass(slots=True)
class _SendContext:
    appointment: Appointment
    customer: Customer | None
    service: Service | None
    provider: Provider | None


class AppointmentSender:
    """Render, deduplicate, deliver and record one appointment notification."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        templates: TemplateRepository,
        send_ledger: SendLedger,
        guard: IdempotencyGuard,
        client: DeliveryClient,
        company_name: str = "",
        booking_base_url: str = "",
        default_language: str = "en",
    ) -> None:
        self._session_factory = session_factory
        self.templates = templates
        self.send_ledger = send_ledger
        self.guard = guard
        self.client = client
        self.company_name = company_name
        self.booking_base_url = booking_base_url
        self.default_language = default_language
        self._events = get_structured_logger()

    def _load(self, appointment_id: int) -> _SendContext:
        with self._session_factory() as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is None:
                raise NotFoundError(f"Appointment {appointment_id} not found")
            return _SendContext(
                appointment=appointment,
                customer=session.get(Customer, appointment.customer_id) if appointment.customer_id else None,
                service=session.get(Service, appointment.service_id) if appointment.service_id else None,
                provider=session.get(Provider, appointment.provider_id) if appointment.provider_id else None,
            )

    def _language(self, customer: Customer | None) -> str:
        return (customer.language if customer else None) or self.default_language

    def _resolve_template(self, status_key: str, template_id: int | None, language: str) -> MessageTemplate:
        template = self.templates.resolve(status_key, template_id, language)
        if template is None:
            raise TemplateResolutionError(status_key, template_id)
        return template

    def _phone_failure(self, appointment_id: int, raw_phone: str | None) -> SendOutcome | None:
        if not raw_phone:
            return SendOutcome(
                status=OUTCOME_FAILED,
                appointment_id=appointment_id,
                message="Customer phone number is required",
                error_code=ERROR_CODE_MISSING_PHONE,
            )
        if not normalize_phone(raw_phone, self.client.config.default_country_code):
            return SendOutcome(
                status=OUTCOME_FAILED,
                appointment_id=appointment_id,
                message="Customer phone number is invalid",
                error_code=ERROR_CODE_INVALID_PHONE,
            )
        return None

    def send(
        self,
        appointment_id: int,
        template_id: int | None = None,
        send_type: str = SEND_TYPE_MANUAL,
        force_send: bool = False,
        time_changed: bool = False,
    ) -> SendOutcome:
        """Send the notification for an appointment's current status.

        Raises ConfigurationError when the gateway cannot be used and
        NotFoundError for an unknown appointment; every other problem is
        reported through the returned outcome.
        """
        self.client.ensure_ready()
        context = self._load(appointment_id)
        appointment, customer = context.appointment, context.customer

        raw_phone = customer.phone_number if customer else None
        failure = self._phone_failure(appointment_id, raw_phone)
        if failure is not None:
            self._log(failure, send_type)
            return failure
        to_phone = normalize_phone(raw_phone, self.client.config.default_country_code)

        language = self._language(customer)
        try:
            template = self._resolve_template(appointment.status, template_id, language)
        except TemplateResolutionError as exc:
            outcome = SendOutcome(
                status=OUTCOME_NO_TEMPLATE,
                appointment_id=appointment_id,
                message=str(exc),
                template_id=template_id,
            )
            self._log(outcome, send_type)
            return outcome

        body = render(
            template,
            appointment,
            customer,
            context.service,
            context.provider,
            language,
            company_name=self.company_name,
            booking_base_url=self.booking_base_url,
        )
        body_hash = build_body_hash(appointment_id, template.id, send_type, body)

        if not force_send and self.guard.is_duplicate(
            appointment_id=appointment_id,
            status_key=appointment.status,
            template_id=template.id,
            send_type=send_type,
            body_hash=body_hash,
            time_changed=time_changed,
        ):
            outcome = SendOutcome(
                status=OUTCOME_DUPLICATE,
                appointment_id=appointment_id,
                message="Message already sent recently (duplicate prevention)",
                template_id=template.id,
            )
            self._log(outcome, send_type)
            return outcome

        return self._deliver(
            appointment_id=appointment_id,
            template_id=template.id,
            status_key=appointment.status,
            to_phone=to_phone,
            body=body,
            body_hash=body_hash,
            send_type=send_type,
        )

    def send_custom(self, appointment_id: int, body: str) -> SendOutcome:
        """Deliver a free-form message; no template and no duplicate check."""
        self.client.ensure_ready()
        context = self._load(appointment_id)
        raw_phone = context.customer.phone_number if context.customer else None
        failure = self._phone_failure(appointment_id, raw_phone)
        if failure is not None:
            self._log(failure, SEND_TYPE_MANUAL)
            return failure

        return self._deliver(
            appointment_id=appointment_id,
            template_id=None,
            status_key=CUSTOM_STATUS_KEY,
            to_phone=normalize_phone(raw_phone, self.client.config.default_country_code),
            body=body,
            body_hash=build_body_hash(appointment_id, None, SEND_TYPE_MANUAL, body),
            send_type=SEND_TYPE_MANUAL,
        )

    def _deliver(
        self,
        *,
        appointment_id: int,
        template_id: int | None,
        status_key: str,
        to_phone: str,
        body: str,
        body_hash: str,
        send_type: str,
    ) -> SendOutcome:
        log_id = self.send_ledger.create_log_entry(
            appointment_id=appointment_id,
            template_id=template_id,
            status_key=status_key,
            to_phone=to_phone,
            body_hash=body_hash,
            send_type=send_type,
            payload={"phone": to_phone, "message": body},
        )

        try:
            response = self.client.send_message(to_phone, body)
        except DeliveryError as exc:
            self.send_ledger.update_log_result(
                log_id,
                RESULT_FAILURE,
                http_status=exc.http_status,
                response=exc.payload,
                error_code=ERROR_CODE_SEND,
                error_message=exc.message,
            )
            outcome = SendOutcome(
                status=OUTCOME_FAILED,
                appointment_id=appointment_id,
                message=f"Failed to send message: {exc.message}",
                log_id=log_id,
                template_id=template_id,
                http_status=exc.http_status,
                attempt_count=exc.attempt_count,
                response_time_ms=exc.response_time_ms,
                error_code=ERROR_CODE_SEND,
                response=exc.payload,
            )
            self._log(outcome, send_type)
            return outcome
        except Exception as exc:  # the PENDING record must still be closed out
            logger.exception("Unexpected error delivering appointment %s", appointment_id)
            self.send_ledger.update_log_result(
                log_id,
                RESULT_FAILURE,
                error_code=ERROR_CODE_SEND,
                error_message=str(exc),
            )
            outcome = SendOutcome(
                status=OUTCOME_FAILED,
                appointment_id=appointment_id,
                message=f"Failed to send message: {exc}",
                log_id=log_id,
                template_id=template_id,
                error_code=ERROR_CODE_SEND,
            )
            self._log(outcome, send_type)
            return outcome

        self.send_ledger.update_log_result(
            log_id,
            RESULT_SUCCESS,
            http_status=response.http_status,
            response=response.payload,
        )
        outcome = SendOutcome(
            status=OUTCOME_SENT,
            appointment_id=appointment_id,
            message="Message sent successfully",
            log_id=log_id,
            template_id=template_id,
            http_status=response.http_status,
            attempt_count=response.attempt_count,
            response_time_ms=response.response_time_ms,
            response=response.payload,
        )
        self._log(outcome, send_type)
        return outcome

    def _log(self, outcome: SendOutcome, send_type: str) -> None:
        log_workflow_event(
            self._events,
            workflow_step=f"send:{send_type}",
            routine_id=None,
            appointment_id=outcome.appointment_id,
            status=outcome.status.lower(),
            log_id=outcome.log_id,
            error_code=outcome.error_code,
            error_message=None if outcome.success else outcome.message,
            message=outcome.message,
            level=logging.WARNING if outcome.status == OUTCOME_FAILED else logging.INFO,
        )

    def send_on_create(self, appointment: AppointmentSnapshot) -> SendOutcome:
        return self.send(appointment.appointment_id, appointment.template_id, SEND_TYPE_ON_CREATE)

    def send_on_update(
        self,
        appointment: AppointmentSnapshot,
        old_appointment: AppointmentSnapshot | None = None,
    ) -> SendOutcome:
        """Notify only when the status or the start time actually changed."""
        status_changed = old_appointment is None or appointment.status != old_appointment.status
        time_changed = old_appointment is None or appointment.start_datetime != old_appointment.start_datetime
        if not status_changed and not time_changed:
            logger.info("Appointment %s updated without status/time change; no message sent", appointment.appointment_id)
            return SendOutcome(
                status=OUTCOME_DUPLICATE,
                appointment_id=appointment.appointment_id,
                message="No relevant changes (status/time), no message sent",
            )
        return self.send(
            appointment.appointment_id,
            appointment.template_id,
            SEND_TYPE_ON_UPDATE,
            force_send=False,
            time_changed=time_changed,
        )

    def send_manual(self, appointment_id: int, template_id: int | None = None, force_send: bool = True) -> SendOutcome:
        return self.send(appointment_id, template_id, SEND_TYPE_MANUAL, force_send)
