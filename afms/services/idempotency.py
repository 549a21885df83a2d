"""
Idempotency and deduplication guards for device submissions.

Two independent guards live here:
- Request idempotency keys: a deterministic key per (device, operation,
  payload identity, actor) with a content hash that detects replays
- Attendance scan deduplication: the same fingerprint on the same device for
  the same employee within a time window is one physical scan
"""
import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from afms.core.clock import to_naive_utc, utcnow
from afms.core.exceptions import IdempotencyCollision
from afms.core.logging import Logger
from afms.models.domain import DeduplicationResult
from afms.models.enums import IdempotencyStatus
from afms.models.idempotency import AttendanceDeduplication, IdempotencyKey

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_DEDUP_WINDOW_MINUTES = 5

# Excluded from the content hash so retransmissions with a fresh timestamp still match
VOLATILE_FIELDS = frozenset({"timestamp", "createdAt", "updatedAt", "created_at", "updated_at"})

# A client-supplied request id stands for the payload when deriving the key
REQUEST_ID_FIELDS = ("idempotency_key", "idempotencyKey", "request_id", "requestId")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def normalize_request_data(data: Any) -> Any:
    """Drop volatile fields at every depth; sort lists so element order does not matter."""
    if isinstance(data, dict):
        return {
            key: normalize_request_data(value)
            for key, value in sorted(data.items())
            if key not in VOLATILE_FIELDS
        }
    if isinstance(data, (list, tuple)):
        return sorted((normalize_request_data(item) for item in data), key=canonical_json)
    return data


class IdempotencyService:
    """Detects duplicate submissions and tracks per-key processing status."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        logger: Optional[Logger] = None,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        dedup_window_minutes: int = DEFAULT_DEDUP_WINDOW_MINUTES,
        fail_open: bool = True,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.logger = logger or Logger(__name__)
        self.default_ttl_seconds = default_ttl_seconds
        self.dedup_window_minutes = dedup_window_minutes
        self.fail_open = fail_open
        self.clock = clock

    def generate_idempotency_key(
        self,
        device_id: str,
        operation: str,
        request_data: Any,
        user_id: Optional[str] = None,
    ) -> str:
        """Deterministic sha256 key; identical inputs always give the identical key."""
        payload_identity = request_data
        if isinstance(request_data, dict):
            for name in REQUEST_ID_FIELDS:
                if request_data.get(name):
                    payload_identity = {"requestId": str(request_data[name])}
                    break

        data_string = canonical_json({
            "deviceId": device_id,
            "operation": operation,
            "requestData": payload_identity,
            "userId": user_id,
        })
        return hashlib.sha256(data_string.encode("utf-8")).hexdigest()

    def generate_request_hash(self, request_data: Any) -> str:
        """Content fingerprint of the request, ignoring volatile fields and key order."""
        normalized = normalize_request_data(request_data)
        return hashlib.md5(canonical_json(normalized).encode("utf-8")).hexdigest()

    async def check_idempotency(
        self,
        device_id: str,
        operation: str,
        request_data: Any,
        user_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> DeduplicationResult:
        """
        Check for a duplicate request and claim the key if it is new.

        Returns is_duplicate=True with the stored response for a repeat of an
        earlier request. Raises IdempotencyCollision when the key matches but
        the content differs.
        """
        idempotency_key = self.generate_idempotency_key(device_id, operation, request_data, user_id)
        request_hash = self.generate_request_hash(request_data)
        log = self.logger.child(idempotency_key=idempotency_key, device_id=device_id, operation=operation)

        try:
            async with self.session_factory() as session:
                now = self.clock()
                existing = await session.get(IdempotencyKey, idempotency_key)

                if existing is not None and existing.expires_at < now:
                    await session.delete(existing)
                    await session.commit()
                    log.info("Expired idempotency key removed")
                    existing = None

                if existing is not None:
                    return self._evaluate_existing(existing, request_hash, user_id, log)

                ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
                expires_at = now + timedelta(seconds=ttl)
                session.add(IdempotencyKey(
                    key=idempotency_key,
                    request_hash=request_hash,
                    status=IdempotencyStatus.PROCESSING,
                    created_at=now,
                    expires_at=expires_at,
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent request claimed the key first; judge against its record
                    await session.rollback()
                    winner = await session.get(IdempotencyKey, idempotency_key)
                    if winner is None:
                        raise
                    return self._evaluate_existing(winner, request_hash, user_id, log)

                log.info("New idempotency key created", expires_at=expires_at)
                return DeduplicationResult(is_duplicate=False, idempotency_key=idempotency_key)
        except IdempotencyCollision:
            raise
        except Exception:
            log.exception("Idempotency check failed")
            raise

    def _evaluate_existing(
        self,
        existing: IdempotencyKey,
        request_hash: str,
        user_id: Optional[str],
        log: Logger,
    ) -> DeduplicationResult:
        if existing.request_hash == request_hash:
            log.warning("Duplicate request detected", status=existing.status.value)
            return DeduplicationResult(
                is_duplicate=True,
                idempotency_key=existing.key,
                existing_response=existing.response,
            )

        # Same key but different content - potential replay attack
        log.log_security_event(
            "idempotency_key_collision",
            user_id=user_id,
            existing_hash=existing.request_hash,
            new_hash=request_hash,
        )
        raise IdempotencyCollision(existing.key, existing.request_hash, request_hash)

    async def mark_completed(self, idempotency_key: str, response: Any) -> None:
        """Store the response for replay. Best effort: failures are logged, not raised."""
        try:
            await self._set_status(idempotency_key, IdempotencyStatus.COMPLETED, response)
            self.logger.info("Idempotency key marked as completed", idempotency_key=idempotency_key)
        except Exception:
            self.logger.exception("Failed to mark idempotency key as completed", idempotency_key=idempotency_key)

    async def mark_failed(self, idempotency_key: str, error: Any) -> None:
        """Best effort, like mark_completed."""
        message = str(error)
        try:
            await self._set_status(idempotency_key, IdempotencyStatus.FAILED, {"error": message})
            self.logger.info("Idempotency key marked as failed", idempotency_key=idempotency_key, error=message)
        except Exception:
            self.logger.exception("Failed to mark idempotency key as failed", idempotency_key=idempotency_key)

    async def _set_status(self, idempotency_key: str, status: IdempotencyStatus, response: Any) -> None:
        # Round-trip through JSON so the stored value is exactly what a replay returns
        stored = json.loads(json.dumps(response, default=str))
        async with self.session_factory() as session:
            await session.execute(
                update(IdempotencyKey)
                .where(IdempotencyKey.key == idempotency_key)
                .values(status=status, response=stored)
            )
            await session.commit()

    async def cleanup_expired(self) -> int:
        """Delete every key past expires_at. Intended to run on a schedule."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(IdempotencyKey).where(IdempotencyKey.expires_at < self.clock())
                )
                await session.commit()
            deleted = result.rowcount or 0
            self.logger.info("Expired idempotency keys cleaned up", deleted_count=deleted)
            return deleted
        except Exception:
            self.logger.exception("Failed to cleanup expired idempotency keys")
            return 0

    async def check_attendance_deduplication(
        self,
        device_id: str,
        employee_id: str,
        fingerprint_payload: Any,
        timestamp: datetime,
        window_minutes: Optional[int] = None,
    ) -> bool:
        """
        True means "duplicate scan, suppress it"; False means "recorded, process it".

        On any internal error this fails open (returns False) unless the
        service was built with fail_open=False.
        """
        window = timedelta(minutes=window_minutes if window_minutes is not None else self.dedup_window_minutes)
        timestamp = to_naive_utc(timestamp)

        try:
            fingerprint_hash = self._fingerprint_hash(fingerprint_payload)
            async with self.session_factory() as session:
                result = await session.execute(
                    select(AttendanceDeduplication).where(
                        AttendanceDeduplication.device_id == device_id,
                        AttendanceDeduplication.employee_id == employee_id,
                        AttendanceDeduplication.fingerprint_hash == fingerprint_hash,
                        AttendanceDeduplication.timestamp >= timestamp - window,
                        AttendanceDeduplication.timestamp <= timestamp + window,
                    ).limit(1)
                )
                existing = result.scalars().first()

                if existing is not None:
                    self.logger.warning(
                        "Duplicate attendance detected within time window",
                        device_id=device_id,
                        employee_id=employee_id,
                        timestamp=timestamp,
                        window_minutes=window.total_seconds() / 60,
                        existing_timestamp=existing.timestamp,
                    )
                    return True

                session.add(AttendanceDeduplication(
                    device_id=device_id,
                    employee_id=employee_id,
                    fingerprint_hash=fingerprint_hash,
                    timestamp=timestamp,
                ))
                await session.commit()
                return False
        except Exception:
            self.logger.exception(
                "Attendance deduplication check failed",
                device_id=device_id,
                employee_id=employee_id,
                timestamp=timestamp,
                fail_open=self.fail_open,
            )
            return not self.fail_open

    @staticmethod
    def _fingerprint_hash(fingerprint_payload: Any) -> str:
        if isinstance(fingerprint_payload, bytes):
            raw = fingerprint_payload
        elif isinstance(fingerprint_payload, str):
            raw = fingerprint_payload.encode("utf-8")
        else:
            raw = canonical_json(fingerprint_payload).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    async def get_statistics(self) -> Optional[Dict[str, Any]]:
        """Counts of keys per status and the completion rate; None if storage fails."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(IdempotencyKey.status, func.count(IdempotencyKey.key)).group_by(IdempotencyKey.status)
                )
                counts = {status.value: count for status, count in result.all()}
        except Exception:
            self.logger.exception("Failed to get idempotency statistics")
            return None

        total = sum(counts.values())
        completed = counts.get(IdempotencyStatus.COMPLETED.value, 0)
        return {
            "total": total,
            "processing": counts.get(IdempotencyStatus.PROCESSING.value, 0),
            "completed": completed,
            "failed": counts.get(IdempotencyStatus.FAILED.value, 0),
            "success_rate": (completed / total) * 100 if total > 0 else 0,
        }
