"""
Command and query handlers wired into the CQRS facade at boot.

Every command handler follows the same write path: read the aggregate's last
version, append one event with that expected version, publish it on the bus.
A concurrent writer surfaces as ConcurrencyConflict from the event store.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from afms.core.clock import utcnow
from afms.models.domain import CamelModel, Command, DomainEvent, EventMetadata, Query, ReadModel
from afms.models.enums import EventType


class CommandType:
    RECORD_ATTENDANCE = "RecordAttendance"
    START_PAYROLL_CALCULATION = "StartPayrollCalculation"
    COMPLETE_PAYROLL_CALCULATION = "CompletePayrollCalculation"
    ADD_EMPLOYEE = "AddEmployee"


class QueryType:
    GET_AGGREGATE_EVENTS = "GetAggregateEvents"
    GET_READ_MODEL = "GetReadModel"


# Command payloads

class _Payload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class RecordAttendancePayload(_Payload):
    device_id: Optional[str] = None
    branch_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    type: Literal["check_in", "check_out"] = "check_in"
    verify_type: Optional[int] = None


class StartPayrollCalculationPayload(_Payload):
    employee_id: Optional[str] = None
    branch_id: Optional[str] = None
    period: Optional[str] = None


class CompletePayrollCalculationPayload(_Payload):
    employee_id: Optional[str] = None
    period: Optional[str] = None
    total_amount: float = 0


class AddEmployeePayload(_Payload):
    name: str
    branch_id: Optional[str] = None
    position_id: Optional[str] = None
    department_id: Optional[str] = None


class EventCommandHandler:
    """Decodes the payload, appends one event and publishes it."""

    aggregate_type: str = ""
    event_type: str = ""
    payload_model: Type[_Payload] = _Payload

    def __init__(self, event_store, event_bus):
        self.event_store = event_store
        self.event_bus = event_bus

    def build_event_data(self, command: Command, payload: _Payload) -> Dict[str, Any]:
        data = payload.model_dump(by_alias=True, mode="json", exclude_none=True)
        data.setdefault("employeeId", command.aggregate_id)
        return data

    async def handle(self, command: Command) -> DomainEvent:
        payload = self.payload_model.model_validate(command.payload)
        expected_version = await self.event_store.get_last_event_version(command.aggregate_id)

        event = await self.event_store.save_event(
            aggregate_id=command.aggregate_id,
            aggregate_type=self.aggregate_type,
            event_type=self.event_type,
            event_data=self.build_event_data(command, payload),
            expected_version=expected_version,
            metadata=EventMetadata(
                user_id=command.user_id,
                device_id=getattr(payload, "device_id", None),
                causation_id=command.id,
            ),
        )
        await self.event_bus.publish(event)
        return event


class RecordAttendanceHandler(EventCommandHandler):
    aggregate_type = "Employee"
    event_type = EventType.ATTENDANCE_RECORDED
    payload_model = RecordAttendancePayload


class StartPayrollCalculationHandler(EventCommandHandler):
    aggregate_type = "Payroll"
    event_type = EventType.PAYROLL_CALCULATION_STARTED
    payload_model = StartPayrollCalculationPayload


class CompletePayrollCalculationHandler(EventCommandHandler):
    aggregate_type = "Payroll"
    event_type = EventType.PAYROLL_CALCULATED
    payload_model = CompletePayrollCalculationPayload


class AddEmployeeHandler(EventCommandHandler):
    aggregate_type = "Employee"
    event_type = EventType.EMPLOYEE_ADDED
    payload_model = AddEmployeePayload


# Queries

class GetAggregateEventsHandler:
    """parameters: aggregateId, optional fromVersion."""

    def __init__(self, event_store):
        self.event_store = event_store

    async def handle(self, query: Query) -> List[DomainEvent]:
        params = query.parameters
        aggregate_id = params.get("aggregateId") or params.get("aggregate_id")
        if not aggregate_id:
            raise ValueError("aggregateId parameter is required")
        from_version = params.get("fromVersion") or params.get("from_version")
        if from_version is not None:
            try:
                from_version = int(from_version)
            except (TypeError, ValueError):
                raise ValueError(f"fromVersion must be an integer, got {from_version!r}")
        return await self.event_store.get_events(aggregate_id, from_version)


class GetReadModelHandler:
    """parameters: type, id."""

    def __init__(self, read_model_manager):
        self.read_model_manager = read_model_manager

    async def handle(self, query: Query) -> Optional[ReadModel]:
        params = query.parameters
        if not params.get("type") or not params.get("id"):
            raise ValueError("type and id parameters are required")
        return await self.read_model_manager.get_read_model(params["type"], params["id"])


def register_default_handlers(cqrs, event_store, event_bus) -> None:
    """Register every built-in command and query handler on the facade."""
    cqrs.register_command_handler(CommandType.RECORD_ATTENDANCE, RecordAttendanceHandler(event_store, event_bus))
    cqrs.register_command_handler(
        CommandType.START_PAYROLL_CALCULATION, StartPayrollCalculationHandler(event_store, event_bus)
    )
    cqrs.register_command_handler(
        CommandType.COMPLETE_PAYROLL_CALCULATION, CompletePayrollCalculationHandler(event_store, event_bus)
    )
    cqrs.register_command_handler(CommandType.ADD_EMPLOYEE, AddEmployeeHandler(event_store, event_bus))

    cqrs.register_query_handler(QueryType.GET_AGGREGATE_EVENTS, GetAggregateEventsHandler(event_store))
    cqrs.register_query_handler(QueryType.GET_READ_MODEL, GetReadModelHandler(cqrs.read_model_manager))
