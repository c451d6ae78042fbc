"""Shared test helper functions for chatrelay tests.

Regular functions, not fixtures, so both conftest.py and test modules can
import them.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from chatrelay.messages.models import CanonicalMessage, Conversation, Identity, MessageKind

WA_OBJECT = "whatsapp_business_account"


def text_message(
    sender: str = "15551234567",
    body: str = "Hello",
    message_id: str = "wamid.1",
    timestamp: str = "1704067200",
) -> dict[str, Any]:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }


def make_envelope(
    messages: list[dict[str, Any]] | None = None,
    *,
    contacts: list[dict[str, Any]] | None = None,
    statuses: list[dict[str, Any]] | None = None,
    phone_number_id: str = "PNID-1",
) -> dict[str, Any]:
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"phone_number_id": phone_number_id},
    }
    if messages is not None:
        value["messages"] = messages
    if contacts is not None:
        value["contacts"] = contacts
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": WA_OBJECT,
        "entry": [{"id": "WABA-1", "changes": [{"field": "messages", "value": value}]}],
    }


def profile(wa_id: str, name: str) -> dict[str, Any]:
    return {"wa_id": wa_id, "profile": {"name": name}}


def bound_message(
    address: str = "15551234567",
    *,
    content: str = "Hello",
    direction: str = "received",
    provider_message_id: str | None = "wamid.1",
    timestamp: datetime | None = None,
    identity_id: int | None = None,
    chat_id: int | None = None,
) -> CanonicalMessage:
    """A text message already bound to an identity and conversation."""
    return CanonicalMessage(
        direction=direction,  # type: ignore[arg-type]
        address=address,
        content=content,
        kind=MessageKind.TEXT,
        timestamp=timestamp or datetime(2024, 1, 1, tzinfo=timezone.utc),
        provider_message_id=provider_message_id,
        status="delivered" if direction == "received" else "sent",
        raw_type="text",
        identity=Identity(id=identity_id, address=address, name="Ann", message_count=1),
        conversation=Conversation(id=chat_id, address=address, contact_id=identity_id),
    )


class RecordingBroadcaster:
    """Broadcaster stand-in that records every emitted event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, name: str, payload: dict[str, Any]) -> int:
        with self._lock:
            self.events.append((name, payload))
        return 1
