"""
Tests for the structured logger and its domain helpers.
"""
import json
import logging

import pytest

from afms.core.logging import Logger


def fields_of(record):
    """The JSON fields appended to a formatted message."""
    message = record.getMessage()
    return json.loads(message[message.index("{"):])


@pytest.fixture
def log(caplog):
    caplog.set_level(logging.DEBUG, logger="afms.tests.logging")
    return Logger("afms.tests.logging")


class TestLogger:
    def test_fields_are_appended_as_sorted_json(self, log, caplog):
        log.info("Event published", event_id="evt-1", aggregate_id="emp-1")

        record = caplog.records[-1]
        assert record.getMessage() == 'Event published {"aggregate_id": "emp-1", "event_id": "evt-1"}'

    def test_child_carries_context(self, log, caplog):
        device_log = log.child(device_id="FP-01").child(user_id="emp-1")

        device_log.warning("Scan rejected", reason="unknown user")

        assert fields_of(caplog.records[-1]) == {"device_id": "FP-01", "reason": "unknown user", "user_id": "emp-1"}
        assert log.context == {}

    def test_exc_info_is_passed_through(self, log, caplog):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            log.exception("Failed", step="load")

        record = caplog.records[-1]
        assert record.exc_info is not None
        assert fields_of(record) == {"step": "load"}


class TestDomainHelpers:
    """Caller fields may share a name with a helper's own fields."""

    def test_performance_metric_with_clashing_category(self, log, caplog):
        log.log_performance_metric("rules_execution", 12.34567, category="attendance", rule_count=2)

        fields = fields_of(caplog.records[-1])
        assert fields["category"] == "performance"
        assert fields["operation"] == "rules_execution"
        assert fields["duration_ms"] == 12.346
        assert fields["rule_count"] == 2

    @pytest.mark.parametrize("helper,args,category", [
        ("log_business_event", ("rule_executed",), "business"),
        ("log_security_event", ("action_blocked",), "security"),
        ("log_attendance_event", ("check_in", "emp-1"), "attendance"),
    ])
    def test_helpers_accept_clashing_fields(self, log, caplog, helper, args, category):
        getattr(log, helper)(*args, category="other", event_type="other")

        fields = fields_of(caplog.records[-1])
        assert fields["category"] == category
        assert fields["event_type"] == args[0]

    def test_security_events_are_warnings(self, log, caplog):
        log.log_security_event("idempotency_key_collision", user_id="u1", key="k")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.getMessage().startswith("Security event: idempotency_key_collision")
