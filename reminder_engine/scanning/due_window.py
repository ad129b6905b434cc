"""Find appointments whose reminder send time falls inside the current window.

Appointment start times are stored as wall-clock values in the customer's
timezone. The SQL query only narrows candidates with a generous one-day margin
on either side; the exact due decision happens per row once the customer's
zone is known.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_, or_, select

from reminder_engine.db.models import Appointment, Customer, RoutinePolicy, RoutineSendMark
from reminder_engine.db.session import SessionFactory
from reminder_engine.domain.models import DueAppointment

logger = logging.getLogger(__name__)

COARSE_MARGIN = timedelta(days=1)

Clock = Callable[[], datetime]


def _aware_utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_mark_stale(mark: RoutineSendMark, appointment: Appointment, hours_before: int) -> bool:
    """A mark recorded for another start time or lead time no longer counts."""
    if mark.appointment_start_time is None or mark.routine_hours_before is None:
        return True
    return mark.appointment_start_time != appointment.start_datetime or mark.routine_hours_before != hours_before


class DueWindowScanner:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        default_timezone: str = "UTC",
        lookback_minutes: int = 0,
        clock: Clock = _aware_utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.default_timezone = default_timezone or "UTC"
        self.lookback_minutes = max(0, lookback_minutes)
        self._clock = clock

    def _now(self, now: datetime | None) -> datetime:
        value = now or self._clock()
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def resolve_zone(self, name: str | None) -> ZoneInfo:
        for candidate in (name, self.default_timezone, "UTC"):
            if not candidate:
                continue
            try:
                return ZoneInfo(candidate)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Unknown timezone %r; falling back", candidate)
        return ZoneInfo("UTC")

    def _to_due(self, appointment: Appointment, customer: Customer | None, zone: ZoneInfo) -> DueAppointment:
        return DueAppointment(
            appointment_id=appointment.id,
            start_datetime=appointment.start_datetime,
            status=appointment.status,
            customer_id=appointment.customer_id,
            customer_name=customer.full_name if customer else "",
            customer_phone=customer.phone_number if customer else None,
            customer_timezone=zone.key,
            start_local=appointment.start_datetime.replace(tzinfo=zone),
        )

    def find_due(
        self,
        routine: RoutinePolicy,
        window_minutes: int = 5,
        *,
        now: datetime | None = None,
    ) -> list[DueAppointment]:
        hours_before = routine.hours_before if routine.hours_before is not None else 1
        now_utc = self._now(now)
        naive_now = now_utc.replace(tzinfo=None)
        coarse_from = naive_now - COARSE_MARGIN
        coarse_to = naive_now + timedelta(hours=hours_before, minutes=window_minutes) + COARSE_MARGIN

        mark = RoutineSendMark
        stmt = (
            select(Appointment, Customer)
            .outerjoin(Customer, Customer.id == Appointment.customer_id)
            .outerjoin(
                mark,
                and_(mark.appointment_id == Appointment.id, mark.routine_id == routine.id),
            )
            .where(
                Appointment.status == routine.status_to_match,
                Appointment.is_unavailability.is_(False),
                Appointment.start_datetime >= coarse_from,
                Appointment.start_datetime <= coarse_to,
                or_(
                    mark.id.is_(None),
                    mark.sent_at.is_(None),
                    mark.appointment_start_time.is_(None),
                    mark.routine_hours_before.is_(None),
                    mark.appointment_start_time != Appointment.start_datetime,
                    mark.routine_hours_before != hours_before,
                ),
            )
            .order_by(Appointment.start_datetime.asc(), Appointment.id.asc())
        )

        with self._session_factory() as session:
            rows = session.execute(stmt).all()

        due: list[DueAppointment] = []
        for appointment, customer in rows:
            zone = self.resolve_zone(customer.timezone if customer else None)
            now_local = now_utc.astimezone(zone)
            window_start = now_local - timedelta(minutes=self.lookback_minutes)
            window_end = now_local + timedelta(minutes=window_minutes)

            start_local = appointment.start_datetime.replace(tzinfo=zone)
            send_utc = start_local.astimezone(timezone.utc) - timedelta(hours=hours_before)
            send_time = send_utc.astimezone(zone)
            # Compare instants, not wall values, so DST folds cannot shift the window.
            is_due = window_start.astimezone(timezone.utc) <= send_utc <= window_end.astimezone(timezone.utc)

            logger.debug(
                "Appointment %s: start_local=%s send_local=%s window=[%s, %s] due=%s",
                appointment.id,
                start_local.isoformat(),
                send_time.isoformat(),
                window_start.isoformat(),
                window_end.isoformat(),
                is_due,
            )
            if not is_due:
                continue

            item = self._to_due(appointment, customer, zone)
            item.send_time_local = send_time
            due.append(item)

        return due

    def find_upcoming(self, routine: RoutinePolicy, *, now: datetime | None = None) -> list[DueAppointment]:
        """Unmarked appointments with the routine's status that have not started yet."""
        now_utc = self._now(now)
        coarse_from = now_utc.replace(tzinfo=None) - COARSE_MARGIN
        hours_before = routine.hours_before if routine.hours_before is not None else 1

        stmt = (
            select(Appointment, Customer)
            .outerjoin(Customer, Customer.id == Appointment.customer_id)
            .outerjoin(
                RoutineSendMark,
                and_(
                    RoutineSendMark.appointment_id == Appointment.id,
                    RoutineSendMark.routine_id == routine.id,
                ),
            )
            .where(
                RoutineSendMark.id.is_(None),
                Appointment.status == routine.status_to_match,
                Appointment.is_unavailability.is_(False),
                Appointment.start_datetime >= coarse_from,
            )
            .order_by(Appointment.start_datetime.asc(), Appointment.id.asc())
        )

        with self._session_factory() as session:
            rows = session.execute(stmt).all()

        upcoming: list[DueAppointment] = []
        for appointment, customer in rows:
            zone = self.resolve_zone(customer.timezone if customer else None)
            start_local = appointment.start_datetime.replace(tzinfo=zone)
            if start_local < now_utc:
                continue
            item = self._to_due(appointment, customer, zone)
            item.send_time_local = (start_local.astimezone(timezone.utc) - timedelta(hours=hours_before)).astimezone(zone)
            upcoming.append(item)
        return upcoming
