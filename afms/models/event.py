"""
Event log and read-model tables.

The events table is the single source of truth for state changes. Read models
are derived from it and can always be rebuilt by replay.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON, UniqueConstraint, PrimaryKeyConstraint

from afms.core.clock import utcnow
from afms.database import Base


class StoredEvent(Base):
    """
    Immutable domain event row.

    Invariants:
    - Once written, never edited or deleted
    - (aggregate_id, version) is unique: optimistic concurrency is enforced by the database
    - Versions per aggregate start at 1 and increase without gaps
    """
    __tablename__ = "events"

    # Insertion order, used as a tiebreak when timestamps are equal
    sequence = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True, index=True)
    aggregate_id = Column(String, nullable=False, index=True)
    aggregate_type = Column(String, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    event_data = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    user_id = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    correlation_id = Column(String, nullable=True)
    causation_id = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("aggregate_id", "version", name="uq_event_aggregate_version"),
    )


class ReadModelRecord(Base):
    """Denormalized projection output, keyed by (type, id)."""
    __tablename__ = "read_models"

    type = Column(String, nullable=False)
    id = Column(String, nullable=False)
    data = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("type", "id", name="pk_read_models"),
    )
