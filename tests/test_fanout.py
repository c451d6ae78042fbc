"""Tests for automation forwarding and realtime broadcast."""

import threading
from unittest.mock import MagicMock

import requests

from chatrelay.domain.fanout import (
    EVENT_RECEIVED,
    EVENT_SENT,
    AutomationForwarder,
    FanoutDispatcher,
    build_automation_payload,
    build_realtime_payload,
)
from chatrelay.messages.models import StoredMessage
from chatrelay.observability.correlation import reset_correlation_id, set_correlation_id
from tests.helpers import RecordingBroadcaster, bound_message


def _stored(**kwargs):
    return StoredMessage(id=42, message=bound_message(identity_id=7, chat_id=9, **kwargs), store="durable")


class TestAutomationPayload:
    def test_received_message(self):
        payload = build_automation_payload(_stored(), raw_payload={"object": "whatsapp_business_account"})

        assert payload["from"] == "15551234567"
        assert payload["message"] == "Hello"
        assert payload["contactName"] == "Ann"
        assert payload["messageId"] == "wamid.1"
        assert payload["source"] == "incoming"
        assert payload["direction"] == "incoming"
        assert payload["messageType"] == "text"
        assert payload["contactId"] == 7
        assert payload["chatId"] == 9
        assert payload["platform"] == "whatsapp"
        assert payload["metaData"] == {"object": "whatsapp_business_account"}
        assert "mediaInfo" not in payload

    def test_sent_message(self):
        payload = build_automation_payload(_stored(direction="sent"))
        assert payload["source"] == "outgoing"
        assert "metaData" not in payload


class TestRealtimePayload:
    def test_fields(self):
        payload = build_realtime_payload(_stored(), forwarded=True)

        assert payload["messageId"] == 42
        assert payload["source"] == "incoming"
        assert payload["n8nForwarded"] is True
        assert set(payload) >= {"from", "message", "timestamp", "contactName"}


class TestAutomationForwarder:
    def test_posts_json_with_timeout(self):
        session = MagicMock()
        session.post.return_value.status_code = 200

        forwarder = AutomationForwarder("https://n8n.example/webhook", timeout=4, session=session)
        assert forwarder.forward({"from": "1555", "messageId": "wamid.1"}) is True

        args, kwargs = session.post.call_args
        assert args[0] == "https://n8n.example/webhook"
        assert kwargs["json"] == {"from": "1555", "messageId": "wamid.1"}
        assert kwargs["timeout"] == 4
        assert kwargs["headers"]["X-Source"] == "chatrelay"

    def test_http_error_returns_false(self):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")

        forwarder = AutomationForwarder("https://n8n.example/webhook", session=session)
        assert forwarder.forward({"messageId": "wamid.1"}) is False

    def test_connection_error_returns_false(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        forwarder = AutomationForwarder("https://n8n.example/webhook", session=session)
        assert forwarder.forward({"messageId": "wamid.1"}) is False


class TestFanoutDispatcher:
    def test_forward_success_flag_in_broadcast(self):
        broadcaster = RecordingBroadcaster()
        forwarder = MagicMock(timeout=1.0)
        forwarder.forward.return_value = True
        dispatcher = FanoutDispatcher(broadcaster, forwarder)
        try:
            outcome = dispatcher.dispatch(_stored()).result(timeout=5)
        finally:
            dispatcher.shutdown()

        assert outcome.event == EVENT_RECEIVED
        assert outcome.forwarded is True
        name, payload = broadcaster.events[0]
        assert name == EVENT_RECEIVED
        assert payload["n8nForwarded"] is True
        forwarder.forward.assert_called_once()

    def test_no_forwarder_still_broadcasts(self):
        broadcaster = RecordingBroadcaster()
        dispatcher = FanoutDispatcher(broadcaster)
        try:
            outcome = dispatcher.dispatch(_stored(direction="sent")).result(timeout=5)
        finally:
            dispatcher.shutdown()

        assert outcome.event == EVENT_SENT
        assert outcome.forwarded is False
        assert broadcaster.events[0][1]["n8nForwarded"] is False

    def test_slow_forward_does_not_block_broadcast(self):
        release = threading.Event()
        broadcaster = RecordingBroadcaster()
        forwarder = MagicMock(timeout=0.05)

        def hang(payload):
            release.wait(5)
            return True

        forwarder.forward.side_effect = hang
        dispatcher = FanoutDispatcher(broadcaster, forwarder)
        try:
            outcome = dispatcher.dispatch(_stored()).result(timeout=3)
        finally:
            release.set()
            dispatcher.shutdown()

        assert outcome.forwarded is False
        assert broadcaster.events[0][1]["n8nForwarded"] is False

    def test_forwarder_exception_contained(self):
        broadcaster = RecordingBroadcaster()
        forwarder = MagicMock(timeout=1.0)
        forwarder.forward.side_effect = RuntimeError("boom")
        dispatcher = FanoutDispatcher(broadcaster, forwarder)
        try:
            outcome = dispatcher.dispatch(_stored()).result(timeout=5)
        finally:
            dispatcher.shutdown()

        assert outcome.forwarded is False
        assert len(broadcaster.events) == 1

    def test_broadcaster_exception_contained(self):
        broadcaster = MagicMock()
        broadcaster.emit.side_effect = RuntimeError("socket closed")
        dispatcher = FanoutDispatcher(broadcaster)
        try:
            outcome = dispatcher.dispatch(_stored()).result(timeout=5)
        finally:
            dispatcher.shutdown()

        assert outcome.delivered == 0

    def test_after_shutdown_returns_none(self):
        dispatcher = FanoutDispatcher(RecordingBroadcaster())
        dispatcher.shutdown()
        assert dispatcher.dispatch(_stored()) is None

    def test_correlation_id_reaches_workers(self):
        seen = []
        forwarder = MagicMock(timeout=1.0)

        def capture(payload):
            from chatrelay.observability.correlation import get_correlation_id

            seen.append(get_correlation_id())
            return True

        forwarder.forward.side_effect = capture
        dispatcher = FanoutDispatcher(RecordingBroadcaster(), forwarder)
        token = set_correlation_id("req-123")
        try:
            dispatcher.dispatch(_stored()).result(timeout=5)
        finally:
            reset_correlation_id(token)
            dispatcher.shutdown()

        assert seen == ["req-123"]
