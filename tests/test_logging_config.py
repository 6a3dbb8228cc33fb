import json
import logging
from datetime import datetime, timezone

from app.logging_config import JSONFormatter, get_logger


def make_record(**extra):
    record = logging.LogRecord("matchmaker.test", logging.WARNING, __file__, 1, "Order %s failed", (5,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_context_and_event(self):
        line = JSONFormatter().format(
            make_record(context={"order_id": 5}, event="media_archive.schema_readiness.mismatch")
        )

        data = json.loads(line)
        assert data["level"] == "WARNING"
        assert data["message"] == "Order 5 failed"
        assert data["context"] == {"order_id": 5}
        assert data["event"] == "media_archive.schema_readiness.mismatch"

    def test_non_json_values_stringified(self):
        line = JSONFormatter().format(make_record(context={"expires_at": datetime(2026, 11, 17, tzinfo=timezone.utc)}))

        assert json.loads(line)["context"]["expires_at"] == "2026-11-17 00:00:00+00:00"


class TestGetLogger:
    def test_namespaced(self):
        assert get_logger("moderation_queue").name == "matchmaker.moderation_queue"
