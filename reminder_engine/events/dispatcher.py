"""Appointment-saved events and their subscribers.

The dispatcher is built once with a fixed subscriber list and handed to
whatever code writes appointments.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from reminder_engine.domain.errors import ConfigurationError
from reminder_engine.domain.models import SendOutcome
from reminder_engine.orchestration.send import AppointmentSender, AppointmentSnapshot

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_STATUS_CHANGED = "status_changed"


@dataclass(frozen=True, slots=True)
class AppointmentSaved:
    appointment_id: int
    action_type: str
    new_appointment: AppointmentSnapshot | None = None
    old_appointment: AppointmentSnapshot | None = None


Subscriber = Callable[[AppointmentSaved], object]


class EventDispatcher:
    def __init__(self, subscribers: Iterable[Subscriber] = ()) -> None:
        self._subscribers: tuple[Subscriber, ...] = tuple(subscribers)

    @property
    def subscribers(self) -> tuple[Subscriber, ...]:
        return self._subscribers

    def dispatch(self, event: AppointmentSaved) -> int:
        """Deliver the event to every subscriber; returns how many failed.

        A failing subscriber is logged and skipped so the appointment write
        that raised the event is never rolled back by a notification problem.
        """
        failures = 0
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception:  # subscriber errors must not reach the writer
                failures += 1
                logger.exception(
                    "Subscriber %r failed for appointment %s (%s)",
                    subscriber,
                    event.appointment_id,
                    event.action_type,
                )
        return failures


class AppointmentNotificationSubscriber:
    """Sends the status notification when an appointment is created or changed."""

    def __init__(self, sender: AppointmentSender) -> None:
        self.sender = sender

    def __call__(self, event: AppointmentSaved) -> SendOutcome | None:
        if not self.sender.client.config.enabled:
            logger.info("WhatsApp integration disabled; skipping notification for %s", event.appointment_id)
            return None

        new = event.new_appointment or AppointmentSnapshot(
            appointment_id=event.appointment_id,
            status="",
            start_datetime=None,
        )
        try:
            if event.action_type == ACTION_CREATE:
                return self.sender.send_on_create(new)
            if event.action_type in (ACTION_UPDATE, ACTION_STATUS_CHANGED):
                return self.sender.send_on_update(new, event.old_appointment)
        except ConfigurationError as exc:
            logger.warning("Gateway not ready; notification for %s skipped: %s", event.appointment_id, exc)
            return None

        logger.warning("Unknown appointment action %r for %s", event.action_type, event.appointment_id)
        return None
