"""
Append-only event store with optimistic concurrency.

The store is the single source of truth for event ordering per aggregate;
every other component only reads from it.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from afms.core.clock import utcnow
from afms.core.exceptions import ConcurrencyConflict
from afms.core.logging import Logger
from afms.models.domain import DomainEvent, EventMetadata
from afms.models.event import StoredEvent


class EventStore:
    """Writes and replays domain events."""

    def __init__(self, session_factory: async_sessionmaker, logger: Optional[Logger] = None, clock=utcnow):
        self.session_factory = session_factory
        self.logger = logger or Logger(__name__)
        self.clock = clock

    async def save_event(
        self,
        aggregate_id: str,
        aggregate_type: str,
        event_type: str,
        event_data: Dict[str, Any],
        expected_version: int,
        metadata: Optional[EventMetadata] = None,
    ) -> DomainEvent:
        """
        Append one event with version expected_version + 1.

        Invariants:
        - Versions per aggregate increase by exactly one
        - An expected_version other than the current version (stale or ahead)
          raises ConcurrencyConflict and persists nothing
        """
        metadata = metadata or EventMetadata()
        record = StoredEvent(
            id=str(uuid.uuid4()),
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=event_data,
            version=expected_version + 1,
            timestamp=self.clock(),
            user_id=metadata.user_id,
            event_metadata=metadata.model_dump(exclude_none=True) or None,
            # Without an explicit correlation id the acting user correlates the events
            correlation_id=metadata.correlation_id or metadata.user_id,
            causation_id=metadata.causation_id,
        )

        async with self.session_factory() as session:
            current = (await session.execute(
                select(func.max(StoredEvent.version)).where(StoredEvent.aggregate_id == aggregate_id)
            )).scalar() or 0
            if current != expected_version:
                await session.rollback()
                self._log_conflict(aggregate_id, event_type, expected_version, current)
                raise ConcurrencyConflict(aggregate_id, expected_version)

            # The unique (aggregate_id, version) constraint catches a racing writer
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                self._log_conflict(aggregate_id, event_type, expected_version, current)
                raise ConcurrencyConflict(aggregate_id, expected_version)

        return DomainEvent.from_record(record)

    def _log_conflict(self, aggregate_id: str, event_type: str, expected_version: int, current_version: int) -> None:
        self.logger.warning(
            "Concurrency conflict on event append",
            aggregate_id=aggregate_id,
            event_type=event_type,
            expected_version=expected_version,
            current_version=current_version,
        )

    async def get_events(self, aggregate_id: str, from_version: Optional[int] = None) -> List[DomainEvent]:
        """Events of one aggregate, ascending by version."""
        stmt = select(StoredEvent).where(StoredEvent.aggregate_id == aggregate_id)
        if from_version:
            stmt = stmt.where(StoredEvent.version >= from_version)
        stmt = stmt.order_by(StoredEvent.version.asc())
        return await self._fetch(stmt)

    async def get_all_events(self, from_timestamp: Optional[datetime] = None, limit: int = 100) -> List[DomainEvent]:
        """Events across all aggregates, ascending by timestamp, capped at limit."""
        stmt = select(StoredEvent)
        if from_timestamp is not None:
            stmt = stmt.where(StoredEvent.timestamp >= from_timestamp)
        stmt = stmt.order_by(StoredEvent.timestamp.asc(), StoredEvent.sequence.asc()).limit(limit)
        return await self._fetch(stmt)

    async def get_events_by_type(self, event_types: Iterable[str]) -> List[DomainEvent]:
        """Every event of the given types, ascending by timestamp. Used for projection replay."""
        event_types = list(event_types)
        if not event_types:
            return []
        stmt = (
            select(StoredEvent)
            .where(StoredEvent.event_type.in_(event_types))
            .order_by(StoredEvent.timestamp.asc(), StoredEvent.sequence.asc())
        )
        return await self._fetch(stmt)

    async def get_last_event_version(self, aggregate_id: str) -> int:
        """Current version of an aggregate; 0 if it has no events."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(StoredEvent.version)).where(StoredEvent.aggregate_id == aggregate_id)
            )
            return result.scalar() or 0

    async def _fetch(self, stmt) -> List[DomainEvent]:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [DomainEvent.from_record(r) for r in result.scalars().all()]
