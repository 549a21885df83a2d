"""
Tests for the HTTP layer: auth, error mapping and the wired endpoints.
"""
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from afms.core.config import Settings
from afms.main import create_app
from afms.models.rules import BusinessRule

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}

SCAN = {"device_id": "FP-01", "user_id": "emp-1", "timestamp": "2026-01-05T08:30:00"}


@pytest.fixture
def client():
    settings = Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        API_TOKEN=TOKEN,
        METRICS_COLLECTION_INTERVAL_SECONDS=0,
        MEMORY_LIMIT_MB=100000,
    )
    with TestClient(create_app(settings)) as client:
        yield client


def add_rule(client, **fields):
    session_factory = client.app.state.container.session_factory
    fields.setdefault("valid_from", datetime(2020, 1, 1))

    async def insert():
        async with session_factory() as session:
            session.add(BusinessRule(**fields))
            await session.commit()

    client.portal.call(insert)


def record_attendance(client, employee_id="emp-1", at="2026-01-05T08:30:00"):
    return client.post("/api/commands", headers=AUTH, json={
        "type": "RecordAttendance",
        "aggregate_id": employee_id,
        "user_id": "admin",
        "payload": {"deviceId": "FP-01", "timestamp": at, "type": "check_in"},
    })


class TestAuth:
    """Test the bearer token gate."""

    def test_liveness_is_open(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_header(self, client):
        assert client.get("/api/events/emp-1").status_code == 401

    def test_wrong_scheme(self, client):
        response = client.get("/api/events/emp-1", headers={"Authorization": f"Basic {TOKEN}"})

        assert response.status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/api/events/emp-1", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_valid_token(self, client):
        response = client.get("/api/events/emp-1", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == []

    def test_dashboard_requires_token(self, client):
        assert client.get("/metrics/dashboard").status_code == 401
        assert client.get("/metrics/dashboard", headers=AUTH).status_code == 200


class TestCommandsAndQueries:
    def test_command_returns_event(self, client):
        response = record_attendance(client)

        assert response.status_code == 200
        event = response.json()["result"]
        assert event["event_type"] == "AttendanceRecorded"
        assert event["event_version"] == 1

        events = client.get("/api/events/emp-1", headers=AUTH).json()
        assert [e["id"] for e in events] == [event["id"]]

    def test_unknown_command_type(self, client):
        response = client.post("/api/commands", headers=AUTH, json={
            "type": "Teleport",
            "aggregate_id": "emp-1",
            "user_id": "admin",
        })

        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "No handler registered for command: Teleport"

    def test_invalid_command_payload(self, client):
        response = client.post("/api/commands", headers=AUTH, json={
            "type": "AddEmployee",
            "aggregate_id": "emp-9",
            "user_id": "admin",
            "payload": {},
        })

        assert response.status_code == 422

    def test_query_events(self, client):
        record_attendance(client)

        response = client.post("/api/queries", headers=AUTH, json={
            "type": "GetAggregateEvents",
            "parameters": {"aggregateId": "emp-1"},
        })

        assert response.status_code == 200
        assert len(response.json()["result"]) == 1

    def test_query_missing_parameter(self, client):
        response = client.post("/api/queries", headers=AUTH, json={"type": "GetAggregateEvents"})

        assert response.status_code == 400

    def test_unknown_query_type(self, client):
        response = client.post("/api/queries", headers=AUTH, json={"type": "Nope"})

        assert response.status_code == 404


class TestAttendanceSync:
    def test_sync_then_retransmit(self, client):
        first = client.post("/api/attendance/sync", headers=AUTH, json=SCAN)
        second = client.post("/api/attendance/sync", headers=AUTH, json=SCAN)

        assert first.status_code == 200
        assert first.json()["status"] == "recorded"
        assert second.json()["status"] == "duplicate_request"
        assert second.json()["response"] == first.json()["response"]

    def test_duplicate_scan(self, client):
        client.post("/api/attendance/sync", headers=AUTH, json=SCAN)

        response = client.post("/api/attendance/sync", headers=AUTH, json={**SCAN, "timestamp": "2026-01-05T08:31:00"})

        assert response.json()["status"] == "duplicate_scan"

    def test_invalid_scan(self, client):
        response = client.post("/api/attendance/sync", headers=AUTH, json={"device_id": "FP-01"})

        assert response.status_code == 422


class TestReadModels:
    def test_read_model_after_command(self, client):
        record_attendance(client)

        response = client.get("/api/read-models/employee_performance/emp-1", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["data"]["totalLateCount"] == 1

    def test_missing_read_model(self, client):
        response = client.get("/api/read-models/employee_performance/nobody", headers=AUTH)

        assert response.status_code == 404

    def test_rebuild(self, client):
        record_attendance(client)
        record_attendance(client, employee_id="emp-2")

        response = client.post("/api/projections/dashboard_stats/rebuild", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"projection": "dashboard_stats", "events_processed": 2}
        stats = client.get("/api/read-models/dashboard_stats/2026-01-05", headers=AUTH).json()
        assert stats["data"]["presentToday"] == 2

    def test_rebuild_unknown_projection(self, client):
        response = client.post("/api/projections/nope/rebuild", headers=AUTH)

        assert response.status_code == 404


class TestRules:
    def test_execute_rules(self, client):
        add_rule(
            client,
            id="late-deduction",
            name="Late arrival deduction",
            category="attendance",
            conditions=[{"field": "attendanceData.lateMinutes", "operator": "gte", "value": 15}],
            actions=[{"type": "deduction", "parameters": {"amount": 25000}}],
        )

        response = client.post("/api/rules/attendance/execute", headers=AUTH, json={
            "employeeId": "emp-1",
            "attendanceData": {"lateMinutes": 20},
        })

        assert response.status_code == 200
        results = response.json()
        assert len(results) == 1
        assert results[0]["executed"] is True
        assert results[0]["actions"][0]["outcome"] == "executed"

        stats = client.get("/api/rules/statistics", params={"period": "week"}, headers=AUTH).json()
        assert stats["total_executions"] == 1
        assert stats["successful_executions"] == 1

    def test_clear_cache(self, client):
        assert client.post("/api/rules/cache/clear", headers=AUTH).status_code == 204

    def test_unknown_statistics_period(self, client):
        response = client.get("/api/rules/statistics", params={"period": "year"}, headers=AUTH)

        assert response.status_code == 422


class TestOperations:
    def test_dead_letters_empty(self, client):
        response = client.get("/api/dead-letters", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == []

    def test_idempotency_maintenance(self, client):
        client.post("/api/attendance/sync", headers=AUTH, json=SCAN)

        stats = client.get("/api/idempotency/statistics", headers=AUTH).json()
        cleanup = client.post("/api/idempotency/cleanup", headers=AUTH).json()

        assert stats["total"] == 1
        assert stats["completed"] == 1
        assert cleanup == {"deleted_count": 0}

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "memory"}
