"""SQLAlchemy models.

The ledger tables (send logs, routine marks, execution logs) are written by
the engine. The remaining tables belong to the booking system and are only
read here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from reminder_engine.domain.models import EXECUTION_PENDING, RESULT_PENDING
from reminder_engine.utils.clock import utc_now


class Base(DeclarativeBase):
    pass


class RoutinePolicy(Base):
    __tablename__ = "routines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    status_to_match: Mapped[str] = mapped_column(String(64), index=True)
    template_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hours_before: Mapped[int] = mapped_column(Integer, default=1)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), default="")
    last_name: Mapped[str] = mapped_column(String(128), default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Provider(Base):
    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), default="")
    last_name: Mapped[str] = mapped_column(String(128), default="")
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Wall-clock time in the customer's timezone.
    start_datetime: Mapped[datetime] = mapped_column(DateTime, index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("services.id"), nullable=True)
    provider_id: Mapped[int | None] = mapped_column(ForeignKey("providers.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(64), index=True)
    is_unavailability: Mapped[bool] = mapped_column(Boolean, default=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    status_key: Mapped[str] = mapped_column(String(64), index=True)
    language: Mapped[str] = mapped_column(String(16), default="en")
    body: Mapped[str] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class SendRecord(Base):
    """One row per delivery attempt."""

    __tablename__ = "message_send_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    template_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_key: Mapped[str] = mapped_column(String(64))
    to_phone: Mapped[str] = mapped_column(String(64))
    body_hash: Mapped[str] = mapped_column(String(64), index=True)
    send_type: Mapped[str] = mapped_column(String(32))
    provider: Mapped[str] = mapped_column(String(32), default="wppconnect")
    request_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    response_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    result: Mapped[str] = mapped_column(String(16), default=RESULT_PENDING, index=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class RoutineSendMark(Base):
    __tablename__ = "routine_send_marks"
    __table_args__ = (UniqueConstraint("routine_id", "appointment_id", name="uq_routine_appointment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    routine_id: Mapped[int] = mapped_column(Integer, index=True)
    appointment_id: Mapped[int] = mapped_column(Integer, index=True)
    log_id: Mapped[int] = mapped_column(Integer)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    calculated_send_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    appointment_start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    routine_hours_before: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ExecutionLog(Base):
    __tablename__ = "routine_execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    routine_id: Mapped[int] = mapped_column(Integer, index=True)
    routine_name: Mapped[str] = mapped_column(String(255))
    execution_status: Mapped[str] = mapped_column(String(32), default=EXECUTION_PENDING, index=True)
    appointment_status: Mapped[str] = mapped_column(String(64))
    template_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    template_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message_type: Mapped[str] = mapped_column(String(32), default="routine")
    total_appointments_found: Mapped[int] = mapped_column(Integer, default=0)
    successful_sends: Mapped[int] = mapped_column(Integer, default=0)
    failed_sends: Mapped[int] = mapped_column(Integer, default=0)
    clients_notified: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    execution_details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    execution_datetime: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
