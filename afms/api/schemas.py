"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from afms.models.domain import DomainEvent


# CQRS schemas
class CommandRequest(BaseModel):
    id: Optional[str] = None
    type: str = Field(..., min_length=1)
    aggregate_id: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    user_id: str = Field(..., min_length=1)


class QueryRequest(BaseModel):
    type: str = Field(..., min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ResultResponse(BaseModel):
    result: Any = None


class RebuildResponse(BaseModel):
    projection: str
    events_processed: int


# Attendance schemas
class IngestionResponse(BaseModel):
    status: str
    idempotency_key: str
    event: Optional[DomainEvent] = None
    response: Any = None


# Rules schemas
class ExecutedActionResponse(BaseModel):
    type: str
    parameters: Dict[str, Any]
    result: Any = None
    success: bool
    outcome: str
    error: Optional[str] = None


class RuleExecutionResponse(BaseModel):
    rule_id: str
    rule_name: str
    executed: bool
    actions: List[ExecutedActionResponse]
    reason: Optional[str] = None
    execution_time_ms: float
    blocked: bool


class RuleStatisticsResponse(BaseModel):
    period: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float


# Operations schemas
class DeadLetterResponse(BaseModel):
    event: DomainEvent
    handler: str
    error: str
    attempts: int
    failed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CleanupResponse(BaseModel):
    deleted_count: int


class IdempotencyStatisticsResponse(BaseModel):
    total: int
    processing: int
    completed: int
    failed: int
    success_rate: float


class ErrorResponse(BaseModel):
    message: str
    details: Optional[Dict[str, Any]] = None
