"""Meta Cloud API adapter - unpack webhook envelopes.

Meta payload structure:
{
  "object": "whatsapp_business_account",
  "entry": [{
    "changes": [{
      "value": {
        "metadata": {"phone_number_id": "..."},
        "contacts": [{"profile": {"name": "..."}, "wa_id": "PHONE"}],
        "messages": [{"from": "PHONE", "id": "MSG_ID", "type": "text", ...}],
        "statuses": [{"id": "MSG_ID", "status": "delivered", ...}]
      },
      "field": "messages"
    }]
  }]
}
"""

from typing import Any, Iterator

from chatrelay.infra.time import from_epoch_seconds
from chatrelay.messages.models import VALID_STATUSES

from .models import InboundItem, StatusUpdate

WHATSAPP_OBJECT = "whatsapp_business_account"


class InvalidPayloadError(Exception):
    """Raised when Meta payload has invalid shape."""

    pass


def is_whatsapp_envelope(payload: Any) -> bool:
    """Return True if payload is a WhatsApp Business Account webhook."""
    return isinstance(payload, dict) and payload.get("object") == WHATSAPP_OBJECT


def extract_messages(payload: dict[str, Any]) -> list[InboundItem]:
    """Return every message in every entry/change of the envelope.

    Each message is paired with the sender's profile name (matched by wa_id,
    falling back to the first profile in the change) and the receiving
    phone_number_id.

    Raises:
        InvalidPayloadError: If payload is not a WhatsApp envelope.
    """
    if not is_whatsapp_envelope(payload):
        raise InvalidPayloadError("not a whatsapp_business_account payload")

    items: list[InboundItem] = []
    for value in _iter_message_values(payload):
        messages = value.get("messages")
        if not isinstance(messages, list):
            continue

        names = _profile_names(value.get("contacts"))
        phone_number_id = _phone_number_id(value)
        for message in messages:
            if not isinstance(message, dict):
                continue
            sender = str(message.get("from") or "")
            profile_name = names.get(sender) or next(iter(names.values()), None)
            items.append(
                InboundItem(
                    message=message,
                    profile_name=profile_name,
                    phone_number_id=phone_number_id,
                )
            )
    return items


def extract_statuses(payload: dict[str, Any]) -> list[StatusUpdate]:
    """Return delivery status updates carried by the envelope.

    Unknown status values and entries without an id are skipped.
    """
    if not is_whatsapp_envelope(payload):
        return []

    updates: list[StatusUpdate] = []
    for value in _iter_message_values(payload):
        statuses = value.get("statuses")
        if not isinstance(statuses, list):
            continue
        for status in statuses:
            if not isinstance(status, dict):
                continue
            message_id = status.get("id")
            state = status.get("status")
            if not message_id or state not in VALID_STATUSES:
                continue
            updates.append(
                StatusUpdate(
                    provider_message_id=str(message_id),
                    status=str(state),
                    timestamp=from_epoch_seconds(status.get("timestamp")),
                    recipient=status.get("recipient_id"),
                )
            )
    return updates


def get_phone_number_id(payload: dict[str, Any]) -> str | None:
    """Extract phone_number_id from the first change of a Meta payload."""
    for value in _iter_message_values(payload):
        return _phone_number_id(value)
    return None


def _iter_message_values(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        changes = entry.get("changes")
        if not isinstance(changes, list):
            continue
        for change in changes:
            if not isinstance(change, dict):
                continue
            if change.get("field", "messages") != "messages":
                continue
            value = change.get("value")
            if isinstance(value, dict):
                yield value


def _phone_number_id(value: dict[str, Any]) -> str | None:
    metadata = value.get("metadata")
    if not isinstance(metadata, dict):
        return None
    return metadata.get("phone_number_id")


def _profile_names(contacts: Any) -> dict[str, str]:
    names: dict[str, str] = {}
    if not isinstance(contacts, list):
        return names
    for contact in contacts:
        if not isinstance(contact, dict):
            continue
        profile = contact.get("profile")
        name = profile.get("name") if isinstance(profile, dict) else None
        if name:
            names[str(contact.get("wa_id") or "")] = str(name)
    return names
