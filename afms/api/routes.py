"""API routes for the AFMS core: CQRS dispatch, device sync, rules and operations."""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from afms.api.deps import get_container, verify_token
from afms.api.schemas import (
    CleanupResponse,
    CommandRequest,
    DeadLetterResponse,
    ErrorResponse,
    IdempotencyStatisticsResponse,
    IngestionResponse,
    QueryRequest,
    RebuildResponse,
    ResultResponse,
    RuleExecutionResponse,
    RuleStatisticsResponse,
)
from afms.container import Container
from afms.core.exceptions import ConcurrencyConflict, IdempotencyCollision, NoHandlerRegistered, ProjectionNotFound
from afms.models.domain import Command, DomainEvent, Query, ReadModel, RuleExecutionContext
from afms.services.attendance import DeviceScan

router = APIRouter(dependencies=[Depends(verify_token)])


# CQRS endpoints
@router.post("/commands", response_model=ResultResponse, responses={
    404: {"model": ErrorResponse, "description": "No handler registered for the command type"},
    409: {"model": ErrorResponse, "description": "Concurrency conflict - reload and retry"},
})
async def execute_command(request: CommandRequest, container: Container = Depends(get_container)):
    """Dispatch a command; the resulting event is returned."""
    fields = request.model_dump(exclude_none=True)
    try:
        result = await container.cqrs.execute_command(Command(**fields))
    except NoHandlerRegistered as e:
        raise HTTPException(status_code=404, detail={"message": e.message})
    except ConcurrencyConflict as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": e.message, "aggregate_id": e.aggregate_id, "expected_version": e.expected_version},
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=jsonable_encoder(e.errors(include_url=False)))
    return ResultResponse(result=jsonable_encoder(result))


@router.post("/queries", response_model=ResultResponse, responses={
    404: {"model": ErrorResponse, "description": "No handler registered for the query type"},
})
async def execute_query(request: QueryRequest, container: Container = Depends(get_container)):
    try:
        result = await container.cqrs.execute_query(Query(type=request.type, parameters=request.parameters))
    except NoHandlerRegistered as e:
        raise HTTPException(status_code=404, detail={"message": e.message})
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"message": str(e)})
    return ResultResponse(result=jsonable_encoder(result))


# Device sync
@router.post("/attendance/sync", response_model=IngestionResponse, responses={
    409: {"model": ErrorResponse, "description": "Idempotency key collision or concurrency conflict"},
})
async def sync_attendance(scan: DeviceScan, container: Container = Depends(get_container)):
    """
    Ingest one fingerprint scan from a device.

    Retransmissions of the same request replay the stored response;
    a second scan inside the deduplication window is suppressed.
    """
    try:
        result = await container.attendance.ingest(scan)
    except IdempotencyCollision as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": e.message, "idempotency_key": e.idempotency_key},
        )
    except ConcurrencyConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"message": e.message})
    return result.to_dict()


# Rules endpoints
@router.post("/rules/{category}/execute", response_model=List[RuleExecutionResponse])
async def execute_rules(category: str, context: RuleExecutionContext, container: Container = Depends(get_container)):
    """Evaluate every active rule of a category against the given context."""
    results = await container.rules_engine.execute_rules(category, context)
    return [r.to_dict() for r in results]


@router.post("/rules/cache/clear", status_code=status.HTTP_204_NO_CONTENT)
async def clear_rules_cache(container: Container = Depends(get_container)):
    container.rules_engine.clear_cache()


@router.get("/rules/statistics", response_model=RuleStatisticsResponse)
async def rule_statistics(
    period: Literal["day", "week", "month"] = "day",
    container: Container = Depends(get_container),
):
    stats = await container.rules_engine.get_execution_statistics(period)
    if stats is None:
        raise HTTPException(status_code=503, detail="Rule execution statistics unavailable")
    return stats


# Events and read models
@router.get("/events/{aggregate_id}", response_model=List[DomainEvent])
async def list_events(aggregate_id: str, from_version: Optional[int] = None, container: Container = Depends(get_container)):
    """Events of one aggregate in version order."""
    return await container.event_store.get_events(aggregate_id, from_version)


@router.get("/read-models/{model_type}/{model_id}", response_model=ReadModel)
async def get_read_model(model_type: str, model_id: str, container: Container = Depends(get_container)):
    read_model = await container.cqrs.get_read_model(model_type, model_id)
    if read_model is None:
        raise HTTPException(status_code=404, detail="Read model not found")
    return read_model


@router.post("/projections/{name}/rebuild", response_model=RebuildResponse)
async def rebuild_projection(name: str, container: Container = Depends(get_container)):
    try:
        processed = await container.cqrs.rebuild_projection(name)
    except ProjectionNotFound as e:
        raise HTTPException(status_code=404, detail={"message": e.message})
    return RebuildResponse(projection=name, events_processed=processed)


# Operations
@router.get("/dead-letters", response_model=List[DeadLetterResponse])
async def list_dead_letters(container: Container = Depends(get_container)):
    return container.event_bus.dead_letters


@router.post("/idempotency/cleanup", response_model=CleanupResponse)
async def cleanup_idempotency_keys(container: Container = Depends(get_container)):
    deleted = await container.idempotency.cleanup_expired()
    return CleanupResponse(deleted_count=deleted)


@router.get("/idempotency/statistics", response_model=IdempotencyStatisticsResponse)
async def idempotency_statistics(container: Container = Depends(get_container)):
    stats = await container.idempotency.get_statistics()
    if stats is None:
        raise HTTPException(status_code=503, detail="Idempotency statistics unavailable")
    return stats
