"""Tests for outbound sends through the Graph API."""

from unittest.mock import MagicMock

import pytest
import requests

from chatrelay.whatsapp import meta_sender
from chatrelay.whatsapp.meta_sender import MetaSender, SendError


def _response(data=None, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = data if data is not None else {}
    if status >= 400:
        error = requests.HTTPError(f"{status} error")
        error.response = resp
        resp.raise_for_status.side_effect = error
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(meta_sender, "RETRY_DELAY", 0)


def _sender(session):
    return MetaSender("PNID", "TOKEN", api_version="v19.0", session=session)


class TestFromEnv:
    def test_unconfigured(self):
        assert MetaSender.from_env() is None

    def test_configured(self, monkeypatch):
        monkeypatch.setenv("META_PHONE_NUMBER_ID", "PNID")
        monkeypatch.setenv("META_ACCESS_TOKEN", "TOKEN")
        assert isinstance(MetaSender.from_env(), MetaSender)


class TestSendText:
    def test_posts_text_payload(self):
        session = MagicMock()
        session.post.return_value = _response({"messages": [{"id": "wamid.OUT"}]})

        message_id = _sender(session).send_text(to_phone="15551234567", text="Hello")

        assert message_id == "wamid.OUT"
        args, kwargs = session.post.call_args
        assert args[0] == "https://graph.facebook.com/v19.0/PNID/messages"
        assert kwargs["json"]["to"] == "15551234567"
        assert kwargs["json"]["text"]["body"] == "Hello"
        assert kwargs["headers"]["Authorization"] == "Bearer TOKEN"

    def test_missing_id_in_response(self):
        session = MagicMock()
        session.post.return_value = _response({"messaging_product": "whatsapp"})
        assert _sender(session).send_text(to_phone="1555", text="hi") is None

    def test_retries_once_on_5xx(self):
        session = MagicMock()
        session.post.side_effect = [
            _response(status=503),
            _response({"messages": [{"id": "wamid.RETRY"}]}),
        ]

        assert _sender(session).send_text(to_phone="1555", text="hi") == "wamid.RETRY"
        assert session.post.call_count == 2

    def test_retries_once_on_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("down")

        with pytest.raises(SendError):
            _sender(session).send_text(to_phone="1555", text="hi")
        assert session.post.call_count == 2

    def test_4xx_not_retried(self):
        session = MagicMock()
        session.post.return_value = _response(status=400)

        with pytest.raises(SendError):
            _sender(session).send_text(to_phone="1555", text="hi")
        assert session.post.call_count == 1

    def test_never_logs_phone_or_text(self, monkeypatch):
        fake_logger = MagicMock()
        monkeypatch.setattr(meta_sender, "logger", fake_logger)
        session = MagicMock()
        session.post.return_value = _response({"messages": [{"id": "wamid.OUT"}]})

        _sender(session).send_text(to_phone="15559876543", text="secret words")

        logged = str(fake_logger.mock_calls)
        assert "15559876543" not in logged
        assert "secret words" not in logged
