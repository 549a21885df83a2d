"""
Command/query separation for the AFMS core.

Commands change state by appending events; queries only read. Read models are
denormalized views kept up to date by projections subscribed to the event bus
and can be rebuilt from the event store at any time.
"""
import asyncio
from contextlib import nullcontext
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from afms.core.exceptions import NoHandlerRegistered, ProjectionNotFound
from afms.core.logging import Logger
from afms.models.domain import Command, DomainEvent, Query, ReadModel
from afms.models.event import ReadModelRecord


class CommandHandler(Protocol):
    async def handle(self, command: Command) -> Any:
        ...


class QueryHandler(Protocol):
    async def handle(self, query: Query) -> Any:
        ...


class ReadModelProjection(Protocol):
    read_model_type: str
    interested_events: List[str]

    async def project(self, event: DomainEvent) -> None:
        ...


def _instrumented(observability, operation: str, **tags: Any):
    if observability is None:
        return nullcontext()
    return observability.instrument(operation, **tags)


class CommandBus:
    """Routes each command to the single handler registered for its type."""

    def __init__(self, logger: Optional[Logger] = None, observability=None):
        self.logger = logger or Logger(__name__)
        self.observability = observability
        self._handlers: Dict[str, CommandHandler] = {}

    def register(self, command_type: str, handler: CommandHandler) -> None:
        self._handlers[command_type] = handler
        self.logger.info(f"Command handler registered: {command_type}")

    async def execute(self, command: Command) -> Any:
        handler = self._handlers.get(command.type)
        if handler is None:
            raise NoHandlerRegistered("command", command.type)

        self.logger.info(
            "Executing command",
            command_id=command.id,
            command_type=command.type,
            aggregate_id=command.aggregate_id,
            user_id=command.user_id,
        )

        try:
            async with _instrumented(
                self.observability,
                f"command.{command.type}",
                command_id=command.id,
                aggregate_id=command.aggregate_id,
            ):
                result = await handler.handle(command)
        except Exception as e:
            self.logger.error(
                "Command execution failed",
                command_id=command.id,
                command_type=command.type,
                error=str(e),
            )
            raise

        self.logger.info("Command executed successfully", command_id=command.id, command_type=command.type)
        return result


class QueryBus:
    """Routes read-only queries; same dispatch rules as the command bus."""

    def __init__(self, logger: Optional[Logger] = None, observability=None):
        self.logger = logger or Logger(__name__)
        self.observability = observability
        self._handlers: Dict[str, QueryHandler] = {}

    def register(self, query_type: str, handler: QueryHandler) -> None:
        self._handlers[query_type] = handler
        self.logger.info(f"Query handler registered: {query_type}")

    async def execute(self, query: Query) -> Any:
        handler = self._handlers.get(query.type)
        if handler is None:
            raise NoHandlerRegistered("query", query.type)

        self.logger.debug("Executing query", query_type=query.type, parameters=query.parameters)

        try:
            async with _instrumented(self.observability, f"query.{query.type}"):
                result = await handler.handle(query)
        except Exception as e:
            self.logger.error("Query execution failed", query_type=query.type, error=str(e))
            raise

        self.logger.debug(
            "Query executed successfully",
            query_type=query.type,
            result_count=len(result) if isinstance(result, list) else 1,
        )
        return result


class ReadModelManager:
    """Stores read models and feeds events to the projections interested in them."""

    def __init__(self, session_factory: async_sessionmaker, event_store, logger: Optional[Logger] = None):
        self.session_factory = session_factory
        self.event_store = event_store
        self.logger = logger or Logger(__name__)
        self._projections: Dict[str, ReadModelProjection] = {}
        # (type, id) -> lock held across a projection's read-modify-write
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    @property
    def projections(self) -> Dict[str, ReadModelProjection]:
        return dict(self._projections)

    async def handle(self, event: DomainEvent) -> None:
        """Event bus entry point. A failing projection is logged and does not affect the others."""
        for name, projection in list(self._projections.items()):
            if event.event_type not in projection.interested_events:
                continue
            try:
                await projection.project(event)
                self.logger.debug("Read model updated", projection=name, event_type=event.event_type, event_id=event.id)
            except Exception:
                self.logger.exception(
                    "Read model projection failed",
                    projection=name,
                    event_type=event.event_type,
                    event_id=event.id,
                )

    def register_projection(self, name: str, projection: ReadModelProjection) -> None:
        self._projections[name] = projection
        self.logger.info(f"Read model projection registered: {name}")

    def lock(self, model_type: str, model_id: str) -> asyncio.Lock:
        """Serialize updates of one read model within this process."""
        return self._locks.setdefault((model_type, model_id), asyncio.Lock())

    async def get_read_model(self, model_type: str, model_id: str) -> Optional[ReadModel]:
        try:
            async with self.session_factory() as session:
                record = await session.get(ReadModelRecord, {"type": model_type, "id": model_id})
        except Exception:
            self.logger.exception("Failed to get read model", type=model_type, id=model_id)
            return None

        if record is None:
            return None
        return ReadModel(
            id=record.id,
            type=record.type,
            data=record.data or {},
            version=record.version,
            last_updated=record.last_updated,
        )

    async def save_read_model(self, read_model: ReadModel) -> None:
        """Insert or replace the read model keyed by (type, id)."""
        try:
            async with self.session_factory() as session:
                await session.merge(ReadModelRecord(
                    type=read_model.type,
                    id=read_model.id,
                    data=read_model.data,
                    version=read_model.version,
                    last_updated=read_model.last_updated,
                ))
                await session.commit()
        except Exception:
            self.logger.exception("Failed to save read model", type=read_model.type, id=read_model.id)
            raise

    async def rebuild_projection(self, projection_name: str) -> int:
        """
        Drop every read model of the projection's type and replay its events.

        Returns the number of events replayed.
        """
        projection = self._projections.get(projection_name)
        if projection is None:
            raise ProjectionNotFound(projection_name)

        self.logger.info(f"Rebuilding projection: {projection_name}")

        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(ReadModelRecord).where(ReadModelRecord.type == projection.read_model_type)
                )
                await session.commit()

            events = await self.event_store.get_events_by_type(projection.interested_events)
            for event in events:
                await projection.project(event)
        except Exception:
            self.logger.exception("Failed to rebuild projection", projection_name=projection_name)
            raise

        self.logger.info(f"Projection rebuilt successfully: {projection_name}", events_processed=len(events))
        return len(events)


class CQRSFacade:
    """Single entry point bundling the command bus, query bus and read models."""

    def __init__(
        self,
        command_bus: CommandBus,
        query_bus: QueryBus,
        read_model_manager: ReadModelManager,
        logger: Optional[Logger] = None,
    ):
        self.command_bus = command_bus
        self.query_bus = query_bus
        self.read_model_manager = read_model_manager
        self.logger = logger or Logger(__name__)

    async def execute_command(self, command: Command) -> Any:
        return await self.command_bus.execute(command)

    async def execute_query(self, query: Query) -> Any:
        return await self.query_bus.execute(query)

    async def get_read_model(self, model_type: str, model_id: str) -> Optional[ReadModel]:
        return await self.read_model_manager.get_read_model(model_type, model_id)

    def register_command_handler(self, command_type: str, handler: CommandHandler) -> None:
        self.command_bus.register(command_type, handler)

    def register_query_handler(self, query_type: str, handler: QueryHandler) -> None:
        self.query_bus.register(query_type, handler)

    def register_projection(self, name: str, projection: ReadModelProjection) -> None:
        self.read_model_manager.register_projection(name, projection)

    async def rebuild_projection(self, projection_name: str) -> int:
        return await self.read_model_manager.rebuild_projection(projection_name)
