"""
Structured logging on top of the standard library logger.

Usage:
    from afms.core.logging import Logger

    logger = Logger(__name__)
    logger.info("Event published", event_id=event.id)

    device_logger = logger.child(device_id="FP-01")
    device_logger.log_security_event("idempotency_key_collision", user_id="u1")

Keyword arguments that the standard logger does not understand are treated as
structured fields and appended to the message as sorted JSON.
"""
import json
import logging
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_STDLIB_KWARGS = {"exc_info", "stack_info", "stacklevel", "extra"}


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once at process start."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class Logger(logging.LoggerAdapter):
    """Leveled logger carrying a context dict that is attached to every record."""

    def __init__(self, name: Any = "afms", context: Optional[Dict[str, Any]] = None):
        base = name if isinstance(name, logging.Logger) else logging.getLogger(name)
        super().__init__(base, dict(context or {}))

    def process(self, msg, kwargs):
        fields = dict(self.extra)
        for key in list(kwargs):
            if key not in _STDLIB_KWARGS:
                fields[key] = kwargs.pop(key)
        if fields:
            msg = f"{msg} {json.dumps(fields, default=str, sort_keys=True)}"
        return msg, kwargs

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self.extra)

    def child(self, **context: Any) -> "Logger":
        """Create a child logger with additional context."""
        return Logger(self.logger, {**self.extra, **context})

    # Structured logging for specific events. The helper's own fields win over
    # caller fields with the same name.

    def log_attendance_event(self, event_type: str, employee_id: str, **fields: Any) -> None:
        self.info(
            f"Attendance event: {event_type}",
            **{**fields, "event_type": event_type, "employee_id": employee_id, "category": "attendance"},
        )

    def log_security_event(self, event_type: str, user_id: Optional[str] = None, **fields: Any) -> None:
        self.warning(
            f"Security event: {event_type}",
            **{**fields, "event_type": event_type, "user_id": user_id, "category": "security"},
        )

    def log_performance_metric(self, operation: str, duration_ms: float, **fields: Any) -> None:
        self.info(
            f"Performance metric: {operation}",
            **{**fields, "operation": operation, "duration_ms": round(duration_ms, 3), "category": "performance"},
        )

    def log_business_event(self, event_type: str, **fields: Any) -> None:
        self.info(
            f"Business event: {event_type}",
            **{**fields, "event_type": event_type, "category": "business"},
        )
