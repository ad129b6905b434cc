"""Structured JSON logging helpers for reminder workflow events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any


class JsonFormatter(logging.Formatter):
    """Format log records as JSON with the reminder workflow fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "workflow_step": getattr(record, "workflow_step", "unknown"),
            "routine_id": getattr(record, "routine_id", None),
            "appointment_id": getattr(record, "appointment_id", None),
            "status": getattr(record, "status", record.levelname.lower()),
        }

        customer_name = getattr(record, "customer_name", None)
        if customer_name:
            payload["customer_name"] = mask_customer_name(customer_name)

        for key in ("log_id", "error_code", "error_message"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        message = record.getMessage()
        if message:
            payload["message"] = message

        return json.dumps(payload, ensure_ascii=False)


def mask_customer_name(name: str) -> str:
    """Mask a customer name while keeping enough entropy for debugging."""
    if not name:
        return ""

    visible = 1
    if len(name) <= visible:
        return "*"
    return f"{name[:visible]}{'*' * (len(name) - visible)}"


def get_structured_logger(name: str = "reminder_engine.workflow") -> logging.Logger:
    """Return a logger configured to emit JSON records."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def log_workflow_event(
    logger: logging.Logger,
    *,
    workflow_step: str,
    routine_id: int | None,
    appointment_id: int | None,
    status: str,
    message: str = "",
    customer_name: str = "",
    log_id: int | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    level: int = logging.INFO,
) -> None:
    """Emit a structured workflow event."""
    extra: dict[str, Any] = {
        "workflow_step": workflow_step,
        "routine_id": routine_id,
        "appointment_id": appointment_id,
        "status": status,
        "customer_name": customer_name,
        "log_id": log_id,
        "error_code": error_code,
        "error_message": error_message,
    }
    logger.log(level, message, extra=extra)
