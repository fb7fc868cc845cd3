"""Tests — log formatters and request timing headers."""

import json
import logging

from cra_tracker.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(msg="Request CRA1: submitted → under_review", **extra):
    record = logging.LogRecord("cra_tracker.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_workflow_fields_grouped(self):
        out = json.loads(JSONFormatter().format(_record(
            cra_id="CRA1", from_status="submitted", to_status="under_review",
            actor_role="design", request_id="abc123",
        )))
        assert out["service"] == "cra-tracker"
        assert out["workflow"] == {
            "cra_id": "CRA1", "from_status": "submitted",
            "to_status": "under_review", "actor_role": "design",
        }
        assert out["request_id"] == "abc123"

    def test_no_workflow_key_without_context(self):
        out = json.loads(JSONFormatter().format(_record("plain")))
        assert "workflow" not in out


class TestReadableFormatter:
    def test_context_suffix(self):
        line = ReadableFormatter().format(_record("Enqueued", cra_id="CRA9", actor_role="sales"))
        assert "Enqueued (CRA9, as sales)" in line

    def test_no_repetition_of_id_in_message(self):
        line = ReadableFormatter().format(_record(cra_id="CRA1", from_status="submitted", to_status="under_review"))
        assert "(CRA1" not in line
