"""
Domain value objects passed between the core services.

Stored payloads (rule conditions, rule actions, execution contexts) are decoded
once at the boundary into the typed models below. Rule actions decode into one
variant per action type; anything outside the closed set becomes an
UnknownAction that fails when executed.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from afms.core.clock import utcnow
from afms.models.enums import ActionOutcome, ActionType, LogicalOperator


class CamelModel(BaseModel):
    """Stored JSON uses camelCase keys; Python code uses snake_case names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Events

class DomainEvent(BaseModel):
    """Immutable fact about a state change, versioned per aggregate."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    aggregate_id: str
    aggregate_type: str
    event_type: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    event_version: int
    occurred_at: datetime
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "DomainEvent":
        return cls(
            id=record.id,
            aggregate_id=record.aggregate_id,
            aggregate_type=record.aggregate_type,
            event_type=record.event_type,
            event_data=record.event_data or {},
            event_version=record.version,
            occurred_at=record.timestamp,
            correlation_id=record.correlation_id,
            causation_id=record.causation_id,
        )


class EventMetadata(BaseModel):
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None


# CQRS messages

class Command(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    aggregate_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    user_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class Query(BaseModel):
    type: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ReadModel(BaseModel):
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    last_updated: datetime = Field(default_factory=utcnow)


# Rule conditions

class RuleCondition(CamelModel):
    field: str
    # Kept as a plain string: unknown operators evaluate to False instead of failing the load
    operator: str
    value: Any = None
    logical_operator: Optional[LogicalOperator] = None


# Rule actions

class _ActionParameters(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class DeductionParameters(_ActionParameters):
    amount: float
    type: Optional[str] = None
    reason: Optional[str] = None


class BonusParameters(_ActionParameters):
    amount: float
    type: Optional[str] = None
    reason: Optional[str] = None


class NotificationParameters(_ActionParameters):
    message: str = ""
    type: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)


class ApprovalParameters(_ActionParameters):
    approver_role: Optional[str] = None
    reason: Optional[str] = None
    data: Any = None


class BlockParameters(_ActionParameters):
    reason: str = ""
    block_type: Optional[str] = None


class CustomParameters(_ActionParameters):
    action_name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)


class DeductionAction(BaseModel):
    type: Literal[ActionType.DEDUCTION] = ActionType.DEDUCTION
    parameters: DeductionParameters


class BonusAction(BaseModel):
    type: Literal[ActionType.BONUS] = ActionType.BONUS
    parameters: BonusParameters


class NotificationAction(BaseModel):
    type: Literal[ActionType.NOTIFICATION] = ActionType.NOTIFICATION
    parameters: NotificationParameters


class ApprovalRequiredAction(BaseModel):
    type: Literal[ActionType.APPROVAL_REQUIRED] = ActionType.APPROVAL_REQUIRED
    parameters: ApprovalParameters


class BlockAction(BaseModel):
    type: Literal[ActionType.BLOCK] = ActionType.BLOCK
    parameters: BlockParameters


class CustomAction(BaseModel):
    type: Literal[ActionType.CUSTOM] = ActionType.CUSTOM
    parameters: CustomParameters


class UnknownAction(BaseModel):
    """Fallback for action types outside the closed set or with undecodable parameters."""
    type: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    error: str


RuleAction = Union[
    DeductionAction,
    BonusAction,
    NotificationAction,
    ApprovalRequiredAction,
    BlockAction,
    CustomAction,
    UnknownAction,
]

_ACTION_MODELS = {
    ActionType.DEDUCTION.value: DeductionAction,
    ActionType.BONUS.value: BonusAction,
    ActionType.NOTIFICATION.value: NotificationAction,
    ActionType.APPROVAL_REQUIRED.value: ApprovalRequiredAction,
    ActionType.BLOCK.value: BlockAction,
    ActionType.CUSTOM.value: CustomAction,
}


def decode_action(raw: Dict[str, Any]) -> RuleAction:
    """Decode a stored action dict into its typed variant."""
    action_type = str(raw.get("type", ""))
    parameters = raw.get("parameters") or {}
    model = _ACTION_MODELS.get(action_type)
    if model is None:
        return UnknownAction(
            type=action_type,
            parameters=parameters,
            error=f"Unknown action type: {action_type}",
        )
    try:
        return model(parameters=parameters)
    except ValidationError as e:
        return UnknownAction(
            type=action_type,
            parameters=parameters,
            error=f"Invalid parameters for {action_type} action: {e.error_count()} validation error(s)",
        )


def action_parameters(action: RuleAction) -> Dict[str, Any]:
    """Parameters as stored (camelCase keys), for logs and results."""
    if isinstance(action, UnknownAction):
        return dict(action.parameters)
    return action.parameters.model_dump(by_alias=True, exclude_none=True)


def action_type_name(action: RuleAction) -> str:
    return action.type.value if isinstance(action.type, ActionType) else str(action.type)


# Rules

@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    category: str
    conditions: List[RuleCondition]
    actions: List[RuleAction]
    priority: int = 0
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    description: Optional[str] = None
    created_by: str = "system"
    updated_by: str = "system"
    version: int = 1

    @classmethod
    def from_record(cls, record) -> "Rule":
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            category=record.category,
            conditions=[RuleCondition.model_validate(c) for c in (record.conditions or [])],
            actions=[decode_action(a) for a in (record.actions or [])],
            priority=record.priority,
            is_active=record.is_active,
            valid_from=record.valid_from,
            valid_to=record.valid_to,
            created_by=record.created_by,
            updated_by=record.updated_by,
            version=record.version,
        )


class RuleExecutionContext(CamelModel):
    """
    Runtime facts a rule is evaluated against.

    Condition field paths address the camelCase snapshot, e.g.
    "attendanceData.lateMinutes". Extra keys are kept.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    employee_id: str
    branch_id: Optional[str] = None
    department_id: Optional[str] = None
    position_id: Optional[str] = None
    attendance_data: Optional[Dict[str, Any]] = None
    payroll_data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def json_snapshot(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


@dataclass
class ExecutedAction:
    type: str
    parameters: Dict[str, Any]
    outcome: ActionOutcome
    result: Any = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == ActionOutcome.EXECUTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "parameters": self.parameters,
            "result": self.result,
            "success": self.success,
            "outcome": self.outcome.value,
            "error": self.error,
        }


@dataclass
class RuleExecutionResult:
    rule_id: str
    rule_name: str
    executed: bool
    actions: List[ExecutedAction] = field(default_factory=list)
    reason: Optional[str] = None
    execution_time_ms: float = 0.0
    blocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "executed": self.executed,
            "actions": [a.to_dict() for a in self.actions],
            "reason": self.reason,
            "execution_time_ms": self.execution_time_ms,
            "blocked": self.blocked,
        }


# Idempotency

@dataclass(frozen=True)
class DeduplicationResult:
    is_duplicate: bool
    idempotency_key: str
    existing_response: Any = None
