"""Tests for observability utilities."""

import json
import logging
from concurrent.futures import ThreadPoolExecutor

from chatrelay.observability.correlation import (
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
    submit_with_context,
)
from chatrelay.observability.logging import (
    JsonFormatter,
    bind_message_context,
    current_message_context,
    get_logger,
)
from chatrelay.observability.redaction import (
    hash_identifier,
    message_id_prefix,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_bare_whatsapp_address(self):
        assert redact_string("from 15551234567") == "from [REDACTED]"

    def test_redact_email(self):
        result = redact_string("Email: user@example.com")
        assert "user@example.com" not in result

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"body": "secret text", "from": "1555"})
        assert "secret text" not in result
        assert "body" in result

    def test_redact_value_list_only_len(self):
        assert redact_value(["a", "b", "c"]) == "list(len=3)"

    def test_safe_log_context(self):
        ctx = safe_log_context(phone="+5511999998888", count=42, ok=True, missing=None)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx["count"] == "42"
        assert ctx["ok"] == "true"
        assert ctx["missing"] == "null"


class TestIdentifiers:
    def test_hash_is_stable_and_short(self):
        assert hash_identifier("15551234567") == hash_identifier("15551234567")
        assert len(hash_identifier("15551234567")) == 12

    def test_message_id_prefix(self):
        assert message_id_prefix("wamid.HBgLMTU1NTEyMzQ1NjcVAgASGBQz") == "wamid.HBgLMTU1NT"
        assert message_id_prefix("short") == "short"
        assert message_id_prefix(None) == "none"


class TestJsonFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("chatrelay.test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        data = json.loads(JsonFormatter().format(self._record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "chatrelay.test"
        assert data["message"] == "hello"

    def test_extra_fields_merged(self):
        data = json.loads(JsonFormatter().format(self._record(extra_fields={"store": "cache"})))
        assert data["store"] == "cache"

    def test_correlation_id_included(self):
        token = set_correlation_id("cid-42")
        try:
            data = json.loads(JsonFormatter().format(self._record()))
        finally:
            reset_correlation_id(token)
        assert data["correlationId"] == "cid-42"

    def test_worker_thread_named(self):
        data = json.loads(JsonFormatter().format(self._record(threadName="fanout-forward_0")))
        assert data["thread"] == "fanout-forward_0"

    def test_get_logger_single_handler(self):
        first = get_logger("chatrelay.test.single")
        second = get_logger("chatrelay.test.single")
        assert first is second
        assert len(first.handlers) == 1


class TestSubmitWithContext:
    def test_context_copied_to_worker(self):
        token = set_correlation_id("cid-worker")
        try:
            with ThreadPoolExecutor(max_workers=1) as pool:
                seen = submit_with_context(pool, get_correlation_id).result(timeout=5)
        finally:
            reset_correlation_id(token)
        assert seen == "cid-worker"

    def test_plain_submit_has_no_context(self):
        token = set_correlation_id("cid-plain")
        try:
            with ThreadPoolExecutor(max_workers=1) as pool:
                seen = pool.submit(get_correlation_id).result(timeout=5)
        finally:
            reset_correlation_id(token)
        assert seen == ""


class TestMessageContext:
    def _format(self):
        record = logging.LogRecord("chatrelay.test", logging.INFO, __file__, 1, "hello", None, None)
        return json.loads(JsonFormatter().format(record))

    def test_bound_fields_on_every_line(self):
        with bind_message_context(message_id="wamid.ABC", direction="received"):
            data = self._format()
        assert data["message_id"] == "wamid.ABC"
        assert data["direction"] == "received"
        assert data["service"] == "chatrelay"

    def test_unbound_after_exit(self):
        with bind_message_context(message_id="wamid.ABC"):
            pass
        assert "message_id" not in self._format()
        assert current_message_context() == {}

    def test_nested_binding_merges(self):
        with bind_message_context(message_id="wamid.ABC"):
            with bind_message_context(direction="sent"):
                assert current_message_context() == {"message_id": "wamid.ABC", "direction": "sent"}
            assert current_message_context() == {"message_id": "wamid.ABC"}

    def test_follows_fanout_worker(self):
        with bind_message_context(message_id="wamid.W"):
            with ThreadPoolExecutor(max_workers=1) as pool:
                seen = submit_with_context(pool, current_message_context).result(timeout=5)
        assert seen == {"message_id": "wamid.W"}
