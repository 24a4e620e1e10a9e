"""
Tests for structured logging and Sentry redaction

Run with: pytest tests/test_observability.py -v
"""

import asyncio
import json
import logging

import pytest

from logging_config import (
    JSONFormatter,
    SyncContextFilter,
    set_sync_context,
    clear_sync_context,
    get_sync_context,
)
from sentry_integration import redact_dict, filter_sensitive_data, capture_exception


def make_record(msg="hello", **extra):
    record = logging.LogRecord("bankfeed.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONLogging:
    """JSON formatter and sync context."""

    def setup_method(self):
        clear_sync_context()

    def test_formats_json_with_context(self):
        set_sync_context(item_id="item-1", run_id="run-1")
        record = make_record()
        SyncContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["item_id"] == "item-1"
        assert data["run_id"] == "run-1"

    def test_extra_fields_are_nested(self):
        record = make_record(event_type="page_applied", added=3)
        SyncContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"] == {"event_type": "page_applied", "added": 3}

    def test_clear_context(self):
        set_sync_context(item_id="item-1", run_id="run-1")
        clear_sync_context()

        assert get_sync_context() == {"item_id": None, "run_id": None}

    @pytest.mark.asyncio
    async def test_context_is_per_task(self):
        async def sync(item_id):
            set_sync_context(item_id=item_id, run_id=f"run-{item_id}")
            await asyncio.sleep(0)
            return get_sync_context()["item_id"]

        results = await asyncio.gather(sync("a"), sync("b"))

        assert results == ["a", "b"]


class TestSentryRedaction:
    """Sensitive data never reaches Sentry."""

    def test_redacts_nested_keys(self):
        data = {
            "item_id": "item-1",
            "access_token": "access-sandbox-1234",
            "request": {"headers": {"Authorization": "Bearer x"}, "cursor": "c1"},
            "pages": [{"secret": "s", "count": 2}],
        }

        redacted = redact_dict(data)

        assert redacted["item_id"] == "item-1"
        assert redacted["access_token"] == "[REDACTED]"
        assert redacted["request"]["headers"]["Authorization"] == "[REDACTED]"
        assert redacted["request"]["cursor"] == "[REDACTED]"
        assert redacted["pages"] == [{"secret": "[REDACTED]", "count": 2}]

    def test_filter_event(self):
        event = {"extra": {"token": "t"}, "contexts": {"plaid": {"api_key": "k"}}}

        filtered = filter_sensitive_data(event, {})

        assert filtered["extra"]["token"] == "[REDACTED]"
        assert filtered["contexts"]["plaid"]["api_key"] == "[REDACTED]"

    def test_capture_without_sentry_is_noop(self):
        assert capture_exception(RuntimeError("boom"), item_id="item-1") is None
