"""
Tests for request idempotency keys and attendance scan deduplication.
"""
import logging
from datetime import datetime

import pytest
from sqlalchemy import select

from afms.core.exceptions import IdempotencyCollision
from afms.models.enums import IdempotencyStatus
from afms.models.idempotency import AttendanceDeduplication, IdempotencyKey
from afms.services.idempotency import IdempotencyService, normalize_request_data
from conftest import FakeClock

T0 = datetime(2026, 1, 5, 8, 0)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def service(session_factory, logger, clock):
    return IdempotencyService(session_factory, logger, clock=clock)


class TestKeyDerivation:
    """Test key and content hash stability."""

    def test_identical_inputs_give_identical_key(self, service):
        data = {"userId": "emp-1", "timestamp": "2026-01-05T08:00:00"}

        first = service.generate_idempotency_key("FP-01", "attendance_sync", data, "admin")
        second = service.generate_idempotency_key("FP-01", "attendance_sync", dict(data), "admin")

        assert first == second
        assert len(first) == 64

    def test_key_depends_on_device_operation_and_actor(self, service):
        data = {"userId": "emp-1"}
        base = service.generate_idempotency_key("FP-01", "attendance_sync", data, "admin")

        assert service.generate_idempotency_key("FP-02", "attendance_sync", data, "admin") != base
        assert service.generate_idempotency_key("FP-01", "enroll", data, "admin") != base
        assert service.generate_idempotency_key("FP-01", "attendance_sync", data, "other") != base

    def test_request_id_stands_for_payload(self, service):
        first = service.generate_idempotency_key("FP-01", "op", {"requestId": "r-1", "amount": 10})
        second = service.generate_idempotency_key("FP-01", "op", {"requestId": "r-1", "amount": 20})

        assert first == second

    def test_request_hash_ignores_volatile_fields_and_key_order(self, service):
        first = service.generate_request_hash({
            "b": 1,
            "a": {"createdAt": "x", "value": 2},
            "timestamp": "2026-01-05T08:00:00",
        })
        second = service.generate_request_hash({
            "a": {"value": 2, "updatedAt": "y"},
            "timestamp": "2026-01-05T09:30:00",
            "b": 1,
        })

        assert first == second

    def test_request_hash_detects_content_change(self, service):
        assert service.generate_request_hash({"amount": 10}) != service.generate_request_hash({"amount": 11})

    def test_normalize_strips_volatile_fields_inside_lists(self):
        normalized = normalize_request_data({"items": [{"id": 2, "created_at": "x"}, {"id": 1}]})

        assert normalized == {"items": [{"id": 1}, {"id": 2}]}


class TestIdempotencyCheck:
    """Test duplicate, collision and expiry handling."""

    async def test_replay_returns_stored_response(self, service):
        data = {"userId": "emp-1", "timestamp": "2026-01-05T08:00:00"}

        first = await service.check_idempotency("FP-01", "attendance_sync", data, "admin")
        await service.mark_completed(first.idempotency_key, {"eventId": "evt-1", "eventVersion": 1})
        second = await service.check_idempotency("FP-01", "attendance_sync", data, "admin")

        assert first.is_duplicate is False
        assert second.is_duplicate is True
        assert second.idempotency_key == first.idempotency_key
        assert second.existing_response == {"eventId": "evt-1", "eventVersion": 1}

    async def test_duplicate_while_processing_has_no_response(self, service):
        data = {"userId": "emp-1"}

        await service.check_idempotency("FP-01", "op", data)
        second = await service.check_idempotency("FP-01", "op", data)

        assert second.is_duplicate is True
        assert second.existing_response is None

    async def test_changed_content_under_same_key_is_a_collision(self, service, caplog):
        await service.check_idempotency("FP-01", "op", {"requestId": "r-1", "amount": 10}, "admin")

        with caplog.at_level(logging.WARNING):
            with pytest.raises(IdempotencyCollision) as exc_info:
                await service.check_idempotency("FP-01", "op", {"requestId": "r-1", "amount": 20}, "admin")

        assert exc_info.value.existing_hash != exc_info.value.new_hash
        assert "idempotency_key_collision" in caplog.text

    async def test_timestamp_change_under_same_key_is_a_duplicate(self, service):
        await service.check_idempotency("FP-01", "op", {"requestId": "r-1", "timestamp": "08:00"})

        second = await service.check_idempotency("FP-01", "op", {"requestId": "r-1", "timestamp": "08:01"})

        assert second.is_duplicate is True

    async def test_expired_record_is_replaced_by_fresh_run(self, service, session_factory, clock):
        data = {"userId": "emp-1"}
        first = await service.check_idempotency("FP-01", "op", data, ttl_seconds=60)
        await service.mark_completed(first.idempotency_key, {"done": True})

        clock.advance(minutes=2)
        second = await service.check_idempotency("FP-01", "op", data, ttl_seconds=60)

        assert second.is_duplicate is False
        async with session_factory() as session:
            record = await session.get(IdempotencyKey, second.idempotency_key)
        assert record.status == IdempotencyStatus.PROCESSING
        assert record.response is None

    async def test_new_key_is_created_processing_with_ttl(self, service, session_factory):
        result = await service.check_idempotency("FP-01", "op", {"x": 1})

        async with session_factory() as session:
            record = await session.get(IdempotencyKey, result.idempotency_key)
        assert record.status == IdempotencyStatus.PROCESSING
        assert (record.expires_at - record.created_at).total_seconds() == 24 * 60 * 60


class TestStatusTransitions:
    async def test_mark_failed_stores_error(self, service, session_factory):
        result = await service.check_idempotency("FP-01", "op", {"x": 1})

        await service.mark_failed(result.idempotency_key, RuntimeError("device offline"))

        async with session_factory() as session:
            record = await session.get(IdempotencyKey, result.idempotency_key)
        assert record.status == IdempotencyStatus.FAILED
        assert record.response == {"error": "device offline"}

    async def test_mark_completed_is_best_effort(self, logger):
        def broken_factory():
            raise RuntimeError("db down")

        service = IdempotencyService(broken_factory, logger)

        # Must not raise
        await service.mark_completed("some-key", {"ok": True})
        await service.mark_failed("some-key", "boom")

    async def test_cleanup_expired_deletes_only_expired(self, service, clock):
        await service.check_idempotency("FP-01", "op", {"x": 1}, ttl_seconds=60)
        await service.check_idempotency("FP-01", "op", {"x": 2}, ttl_seconds=3600)

        clock.advance(minutes=5)

        assert await service.cleanup_expired() == 1
        assert await service.cleanup_expired() == 0

    async def test_statistics(self, service):
        first = await service.check_idempotency("FP-01", "op", {"x": 1})
        second = await service.check_idempotency("FP-01", "op", {"x": 2})
        await service.check_idempotency("FP-01", "op", {"x": 3})
        await service.mark_completed(first.idempotency_key, {})
        await service.mark_failed(second.idempotency_key, "boom")

        stats = await service.get_statistics()

        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["processing"] == 1
        assert stats["success_rate"] == pytest.approx(100 / 3)


class TestAttendanceDeduplication:
    """Test the scan deduplication window."""

    async def test_second_scan_inside_window_is_duplicate(self, service):
        fingerprint = {"template": "abc"}

        first = await service.check_attendance_deduplication("FP-01", "emp-1", fingerprint, T0)
        second = await service.check_attendance_deduplication(
            "FP-01", "emp-1", fingerprint, T0.replace(minute=2)
        )

        assert first is False
        assert second is True

    async def test_second_scan_outside_window_is_not_duplicate(self, service, session_factory):
        fingerprint = {"template": "abc"}

        await service.check_attendance_deduplication("FP-01", "emp-1", fingerprint, T0)
        second = await service.check_attendance_deduplication(
            "FP-01", "emp-1", fingerprint, T0.replace(minute=10)
        )

        assert second is False
        async with session_factory() as session:
            rows = (await session.execute(select(AttendanceDeduplication))).scalars().all()
        assert len(rows) == 2

    async def test_different_employee_or_device_is_not_duplicate(self, service):
        await service.check_attendance_deduplication("FP-01", "emp-1", "abc", T0)

        assert await service.check_attendance_deduplication("FP-01", "emp-2", "abc", T0) is False
        assert await service.check_attendance_deduplication("FP-02", "emp-1", "abc", T0) is False

    async def test_window_is_configurable_per_call(self, service):
        await service.check_attendance_deduplication("FP-01", "emp-1", "abc", T0)

        second = await service.check_attendance_deduplication(
            "FP-01", "emp-1", "abc", T0.replace(minute=10), window_minutes=15
        )

        assert second is True

    async def test_fails_open_on_storage_error(self, logger):
        def broken_factory():
            raise RuntimeError("db down")

        service = IdempotencyService(broken_factory, logger)

        assert await service.check_attendance_deduplication("FP-01", "emp-1", "abc", T0) is False

    async def test_fail_closed_override(self, logger):
        def broken_factory():
            raise RuntimeError("db down")

        service = IdempotencyService(broken_factory, logger, fail_open=False)

        assert await service.check_attendance_deduplication("FP-01", "emp-1", "abc", T0) is True
