"""
Attendance ingestion for fingerprint device sync payloads.

A scan passes two guards before it becomes an AttendanceRecorded event:
the request idempotency key (retransmissions replay the stored response) and
the attendance deduplication window (a second physical scan within the
window is suppressed).
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from afms.core.logging import Logger
from afms.models.domain import Command, DomainEvent
from afms.models.enums import IngestionStatus
from afms.services.handlers import CommandType

SYNC_OPERATION = "attendance_sync"

# Device in/out modes that mean check-out (1 = check-out, 5 = overtime-out)
CHECK_OUT_MODES = {1, 5}


class DeviceScan(BaseModel):
    device_id: str
    user_id: str
    timestamp: datetime
    verify_type: int = 1
    in_out_mode: int = 0

    @property
    def attendance_type(self) -> str:
        return "check_out" if self.in_out_mode in CHECK_OUT_MODES else "check_in"


@dataclass
class IngestionResult:
    status: IngestionStatus
    idempotency_key: str
    event: Optional[DomainEvent] = None
    response: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "event": self.event.model_dump(mode="json") if self.event is not None else None,
            "response": self.response,
        }


class AttendanceIngestionService:
    def __init__(self, idempotency, cqrs, logger: Optional[Logger] = None):
        self.idempotency = idempotency
        self.cqrs = cqrs
        self.logger = logger or Logger(__name__)

    async def ingest(self, scan: DeviceScan, user_id: Optional[str] = None) -> IngestionResult:
        """
        Record one device scan.

        Raises IdempotencyCollision for a reused key with different content,
        and whatever the command raises (e.g. ConcurrencyConflict) after
        marking the key failed.
        """
        log = self.logger.child(device_id=scan.device_id, employee_id=scan.user_id)
        actor = user_id or f"device:{scan.device_id}"

        check = await self.idempotency.check_idempotency(
            scan.device_id,
            SYNC_OPERATION,
            scan.model_dump(mode="json"),
            actor,
        )
        if check.is_duplicate:
            log.info("Device sync replayed from idempotency key", idempotency_key=check.idempotency_key)
            return IngestionResult(
                status=IngestionStatus.DUPLICATE_REQUEST,
                idempotency_key=check.idempotency_key,
                response=check.existing_response,
            )

        try:
            is_duplicate_scan = await self.idempotency.check_attendance_deduplication(
                scan.device_id,
                scan.user_id,
                {"userId": scan.user_id, "verifyType": scan.verify_type, "inOutMode": scan.in_out_mode},
                scan.timestamp,
            )
            if is_duplicate_scan:
                response = {"status": IngestionStatus.DUPLICATE_SCAN.value}
                await self.idempotency.mark_completed(check.idempotency_key, response)
                log.log_attendance_event("duplicate_scan_suppressed", scan.user_id, timestamp=scan.timestamp)
                return IngestionResult(
                    status=IngestionStatus.DUPLICATE_SCAN,
                    idempotency_key=check.idempotency_key,
                    response=response,
                )

            event = await self.cqrs.execute_command(Command(
                type=CommandType.RECORD_ATTENDANCE,
                aggregate_id=scan.user_id,
                user_id=actor,
                payload={
                    "deviceId": scan.device_id,
                    "timestamp": scan.timestamp,
                    "type": scan.attendance_type,
                    "verifyType": scan.verify_type,
                },
            ))
        except Exception as e:
            await self.idempotency.mark_failed(check.idempotency_key, e)
            raise

        response = {
            "status": IngestionStatus.RECORDED.value,
            "eventId": event.id,
            "eventVersion": event.event_version,
        }
        await self.idempotency.mark_completed(check.idempotency_key, response)
        log.log_attendance_event(
            "attendance_recorded",
            scan.user_id,
            event_id=event.id,
            attendance_type=scan.attendance_type,
        )
        return IngestionResult(
            status=IngestionStatus.RECORDED,
            idempotency_key=check.idempotency_key,
            event=event,
            response=response,
        )
