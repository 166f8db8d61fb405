"""Unit tests for the structured logging configuration.

Verifies that ``configure_logging()`` produces well-formed JSON, that the
``request_id_var`` / ``task_id_var`` context variables reach the records, and
that secret-bearing fields are redacted.
"""

from __future__ import annotations

import json
import logging
from io import StringIO

from stream_speculator.core.logging_config import (
    _redact_secrets,
    configure_logging,
    request_id_var,
    task_id_var,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _capture_records(log_level: str, message: str) -> list[dict]:
    """Emit one stdlib log record and return every JSON record written.

    The root handler's stream is swapped for a buffer for the duration of
    the call.
    """
    configure_logging(log_level)

    buffer = StringIO()
    root = logging.getLogger()
    original_streams = []
    for handler in root.handlers:
        if hasattr(handler, "stream"):
            original_streams.append((handler, handler.stream))
            handler.stream = buffer

    logging.getLogger("test.logging_config").info(message)

    for handler, stream in original_streams:
        handler.flush()
        handler.stream = stream

    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


def _find(records: list[dict], event: str) -> dict:
    target = next((r for r in records if r.get("event") == event), None)
    assert target is not None, f"No record with event={event!r} in {records!r}"
    return target


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestConfigureLoggingJson:
    def test_json_contains_required_fields(self) -> None:
        """Records carry event, timestamp, lowercase level and logger name."""
        target = _find(_capture_records("INFO", "required_fields_test"), "required_fields_test")

        assert "timestamp" in target
        assert target["level"] == "info"
        assert target["logger"] == "test.logging_config"

    def test_calling_twice_keeps_one_handler(self) -> None:
        configure_logging("INFO")
        configure_logging("INFO")
        assert len(logging.getLogger().handlers) == 1


class TestContextIds:
    def test_request_id_appears(self) -> None:
        token = request_id_var.set("req-1234")
        try:
            records = _capture_records("INFO", "request_id_test")
        finally:
            request_id_var.reset(token)

        assert _find(records, "request_id_test")["request_id"] == "req-1234"

    def test_task_id_appears(self) -> None:
        """The dispatcher's per-task id is attached to records logged inside a handler."""
        token = task_id_var.set("abc123def456")
        try:
            records = _capture_records("INFO", "task_id_test")
        finally:
            task_id_var.reset(token)

        assert _find(records, "task_id_test")["task_id"] == "abc123def456"

    def test_ids_absent_when_unset(self) -> None:
        target = _find(_capture_records("INFO", "no_ids_test"), "no_ids_test")
        assert target.get("request_id") is None
        assert target.get("task_id") is None


class TestRedaction:
    def test_top_level_secret_keys(self) -> None:
        event = _redact_secrets(
            None, "info", {"event": "x", "client_secret": "s3cr3t", "twitch_webhook_secret": "w", "channel_id": "7"}
        )
        assert event["client_secret"] == "[REDACTED]"
        assert event["twitch_webhook_secret"] == "[REDACTED]"
        assert event["channel_id"] == "7"

    def test_nested_headers(self) -> None:
        """Signature and authorization headers are redacted one level deep."""
        event = _redact_secrets(
            None,
            "info",
            {
                "event": "x",
                "headers": {
                    "Twitch-Eventsub-Message-Signature": "sha256=abc",
                    "Authorization": "Bearer tok",
                    "Twitch-Eventsub-Message-Type": "notification",
                },
            },
        )
        headers = event["headers"]
        assert headers["Twitch-Eventsub-Message-Signature"] == "[REDACTED]"
        assert headers["Authorization"] == "[REDACTED]"
        assert headers["Twitch-Eventsub-Message-Type"] == "notification"
