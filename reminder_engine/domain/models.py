from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# SendRecord.result
RESULT_PENDING = "PENDING"
RESULT_SUCCESS = "SUCCESS"
RESULT_FAILURE = "FAILURE"

# ExecutionLog.execution_status
EXECUTION_PENDING = "PENDING"
EXECUTION_SUCCESS = "SUCCESS"
EXECUTION_PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
EXECUTION_FAILURE = "FAILURE"

# SendOutcome.status
OUTCOME_SENT = "SENT"
OUTCOME_FAILED = "FAILED"
OUTCOME_NO_TEMPLATE = "NO_TEMPLATE"
OUTCOME_DUPLICATE = "DUPLICATE"

SEND_TYPE_ROUTINE = "routine"
SEND_TYPE_ON_CREATE = "onCreate"
SEND_TYPE_ON_UPDATE = "onUpdate"
SEND_TYPE_MANUAL = "manual"

ERROR_CODE_SEND = "SEND_ERROR"
ERROR_CODE_MISSING_PHONE = "MISSING_PHONE"
ERROR_CODE_INVALID_PHONE = "INVALID_PHONE"


@dataclass(slots=True)
class DueAppointment:
    appointment_id: int
    start_datetime: datetime
    status: str
    customer_id: int | None
    customer_name: str = ""
    customer_phone: str | None = None
    customer_timezone: str = "UTC"
    start_local: datetime | None = None
    send_time_local: datetime | None = None


@dataclass(slots=True)
class SendOutcome:
    status: str
    appointment_id: int
    message: str = ""
    log_id: int | None = None
    template_id: int | None = None
    http_status: int | None = None
    attempt_count: int = 0
    response_time_ms: float | None = None
    error_code: str | None = None
    response: dict[str, Any] | None = None

    @property
    def success(self) -> bool:
        return self.status == OUTCOME_SENT


@dataclass(slots=True)
class RunReport:
    routine_id: int
    routine_name: str
    mode: str
    total_found: int = 0
    successful: int = 0
    failed: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    execution_log_id: int | None = None
    execution_status: str | None = None
    error_message: str | None = None
    skipped_busy: bool = False

    def count_skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1
