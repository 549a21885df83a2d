"""Deduplication guards: request idempotency keys and attendance scan records."""
from sqlalchemy import Column, String, Integer, DateTime, JSON, Enum as SQLEnum, Index

from afms.core.clock import utcnow
from afms.database import Base
from afms.models.enums import IdempotencyStatus


class IdempotencyKey(Base):
    """
    Idempotency key storage for preventing duplicate operations.

    Invariants:
    - key is the primary key, so check-then-create is atomic at the storage level
    - Same key + same request_hash is a duplicate; a different hash is a collision
    - Expired keys are removed by the cleanup sweep
    """
    __tablename__ = "idempotency_keys"

    key = Column(String(64), primary_key=True)
    request_hash = Column(String(32), nullable=False)
    status = Column(SQLEnum(IdempotencyStatus), nullable=False, default=IdempotencyStatus.PROCESSING)
    response = Column(JSON, nullable=True)  # Stored once completed or failed

    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    # Index for cleanup queries
    __table_args__ = (
        Index("ix_idempotency_expires_at", "expires_at"),
    )

    def __repr__(self):
        return f"<IdempotencyKey(key='{self.key}', status={self.status}, expires_at={self.expires_at})>"


class AttendanceDeduplication(Base):
    """One row per accepted scan, matched by device, employee and fingerprint hash within a window."""
    __tablename__ = "attendance_deduplication"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False)
    employee_id = Column(String, nullable=False)
    fingerprint_hash = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_attendance_dedup_lookup", "device_id", "employee_id", "fingerprint_hash", "timestamp"),
    )
