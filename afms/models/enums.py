"""Enums for the AFMS core - these define the valid values for states, operators and tags."""
from enum import Enum


class IdempotencyStatus(str, Enum):
    """Processing state of an idempotency key. No other states are allowed."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RuleCategory(str, Enum):
    """Namespaces selecting which rules apply to an execution context."""
    ATTENDANCE = "attendance"
    PAYROLL = "payroll"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    CONTAINS = "contains"
    BETWEEN = "between"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    """The closed set of rule action types."""
    DEDUCTION = "deduction"
    BONUS = "bonus"
    NOTIFICATION = "notification"
    APPROVAL_REQUIRED = "approval_required"
    BLOCK = "block"
    CUSTOM = "custom"


class ActionOutcome(str, Enum):
    """Result variant of a single action execution."""
    EXECUTED = "executed"
    BLOCKED = "blocked"
    FAILED = "failed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class TraceStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"


class IngestionStatus(str, Enum):
    """Outcome of a device attendance sync."""
    RECORDED = "recorded"
    DUPLICATE_SCAN = "duplicate_scan"
    DUPLICATE_REQUEST = "duplicate_request"


# Event type constants for consistency
class EventType:
    """Domain event type tags produced and consumed by the core."""
    ATTENDANCE_RECORDED = "AttendanceRecorded"
    PAYROLL_CALCULATION_STARTED = "PayrollCalculationStarted"
    PAYROLL_CALCULATED = "PayrollCalculated"
    EMPLOYEE_ADDED = "EmployeeAdded"
    EMPLOYEE_UPDATED = "EmployeeUpdated"
    PERFORMANCE_REVIEWED = "PerformanceReviewed"
    NOTIFICATION_TRIGGERED = "NotificationTriggered"

    WILDCARD = "*"
