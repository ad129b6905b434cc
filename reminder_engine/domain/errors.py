"""Exception taxonomy for the reminder engine."""

from __future__ import annotations


class ReminderEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ReminderEngineError):
    """Raised when gateway credentials or session settings are missing."""


class NotFoundError(ReminderEngineError):
    """Raised when a referenced appointment, routine or record does not exist."""


class TemplateResolutionError(ReminderEngineError):
    """Raised when no enabled template exists for an appointment status."""

    def __init__(self, status_key: str, template_id: int | None = None) -> None:
        super().__init__(f"No enabled template found for status: {status_key}")
        self.status_key = status_key
        self.template_id = template_id


class RoutineBusyError(ReminderEngineError):
    """Raised when a run of the same routine is already in progress."""

    def __init__(self, routine_id: int) -> None:
        super().__init__(f"Routine {routine_id} is already running")
        self.routine_id = routine_id


class DeliveryError(ReminderEngineError):
    """Gateway call failed; carries the metadata of the last attempt."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        attempt_count: int = 1,
        response_time_ms: float | None = None,
        payload: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.attempt_count = attempt_count
        self.response_time_ms = response_time_ms
        self.payload = payload

    def metadata(self) -> dict:
        return {
            "http_status": self.http_status,
            "attempt_count": self.attempt_count,
            "response_time_ms": self.response_time_ms,
        }


class TransientDeliveryError(DeliveryError):
    """5xx/408/429 or connection-level failure; eligible for retry."""

    retryable = True


class TerminalDeliveryError(DeliveryError):
    """Other 4xx or malformed response; never retried."""
