"""Message classifier - provider event to canonical message.

Dispatch is on the declared `type` tag only. A declared kind whose
sub-object is missing or malformed still classifies, with placeholder
content; nothing in this module raises on bad provider input.
"""

from typing import Any

from chatrelay.infra.time import from_epoch_seconds
from chatrelay.messages.models import (
    AcquisitionStatus,
    CanonicalMessage,
    ContactShareEvent,
    EventBody,
    InteractiveEvent,
    LocationEvent,
    MediaEvent,
    MediaReference,
    MessageKind,
    RawEvent,
    ReactionEvent,
    TextEvent,
    UnknownEvent,
)

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")

ZERO_BYTES = "0 Bytes"

# Provider type tag -> media kind
_MEDIA_TAGS: dict[str, MessageKind] = {
    "image": MessageKind.IMAGE,
    "audio": MessageKind.AUDIO,
    "voice": MessageKind.AUDIO,
    "video": MessageKind.VIDEO,
    "document": MessageKind.DOCUMENT,
    "sticker": MessageKind.STICKER,
}

_MEDIA_LABELS: dict[MessageKind, str] = {
    MessageKind.IMAGE: "Image",
    MessageKind.AUDIO: "Audio Message",
    MessageKind.VIDEO: "Video",
    MessageKind.DOCUMENT: "Document",
    MessageKind.STICKER: "Sticker",
}

_DEFAULT_MIME: dict[MessageKind, str] = {
    MessageKind.IMAGE: "image/jpeg",
    MessageKind.AUDIO: "audio/ogg",
    MessageKind.VIDEO: "video/mp4",
    MessageKind.DOCUMENT: "application/octet-stream",
    MessageKind.STICKER: "image/webp",
}

DOCUMENT_LABELS: dict[str, str] = {
    "application/pdf": "PDF Document",
    "application/msword": "Word Document",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "Word Document",
    "application/vnd.ms-excel": "Excel Spreadsheet",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "Excel Spreadsheet",
    "application/vnd.ms-powerpoint": "PowerPoint Presentation",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "PowerPoint Presentation",
    "text/plain": "Text File",
    "text/html": "HTML File",
    "text/csv": "CSV File",
    "application/zip": "ZIP Archive",
    "application/x-rar-compressed": "RAR Archive",
    "application/json": "JSON File",
    "application/xml": "XML File",
}


def format_bytes(size: Any) -> str:
    """Format a byte count with 1024-based units and two decimals.

    Zero, negative, absent or non-numeric sizes render as "0 Bytes".

    >>> format_bytes(204800)
    '200.00 KB'
    """
    value = _as_int(size)
    if not value or value <= 0:
        return ZERO_BYTES

    amount = float(value)
    unit = 0
    while amount >= 1024 and unit < len(_SIZE_UNITS) - 1:
        amount /= 1024
        unit += 1
    return f"{amount:.2f} {_SIZE_UNITS[unit]}"


def document_label(mime_type: str | None) -> str:
    """Human label for a document MIME type."""
    return DOCUMENT_LABELS.get(mime_type or "", "Document")


def describe_media(
    kind: MessageKind,
    *,
    mime_type: str | None,
    file_size: Any,
    caption: str | None = None,
    filename: str | None = None,
) -> str:
    """Build the preview text for a binary attachment.

    Used at classification time with the declared size, and again after
    acquisition with the size actually downloaded.
    """
    if kind is MessageKind.DOCUMENT:
        label = filename or document_label(mime_type)
    else:
        label = _MEDIA_LABELS.get(kind, "Media")
    caption_text = f" - {caption}" if caption else ""
    mime = mime_type or _DEFAULT_MIME.get(kind, "application/octet-stream")
    return f"{label}{caption_text} ({mime}, {format_bytes(file_size)})"


def parse_event(raw: dict[str, Any]) -> RawEvent:
    """Parse one provider message object into a RawEvent.

    Args:
        raw: A single entry of `value.messages[]` from the webhook envelope,
            or an equivalent dict.

    Returns:
        RawEvent carrying the variant selected by the declared type tag.
    """
    if not isinstance(raw, dict):
        raw = {}

    type_tag = str(raw.get("type") or "unknown").strip().lower() or "unknown"
    return RawEvent(
        address=str(raw.get("from") or ""),
        provider_message_id=_as_str(raw.get("id")),
        timestamp=from_epoch_seconds(raw.get("timestamp")),
        type_tag=type_tag,
        body=_parse_body(type_tag, raw),
        raw=raw,
    )


def _parse_body(type_tag: str, raw: dict[str, Any]) -> EventBody:
    if type_tag == "text":
        text = _sub(raw, "text")
        return TextEvent(body=_as_str(text.get("body")))

    if type_tag in _MEDIA_TAGS:
        kind = _MEDIA_TAGS[type_tag]
        obj = raw.get(type_tag)
        if type_tag == "audio" and not isinstance(obj, dict):
            obj = raw.get("voice")
        if not isinstance(obj, dict):
            return MediaEvent(kind=kind, voice=type_tag == "voice", present=False)
        return MediaEvent(
            kind=kind,
            media_id=_as_str(obj.get("id")),
            mime_type=_as_str(obj.get("mime_type")),
            file_size=_as_int(obj.get("file_size")),
            caption=_as_str(obj.get("caption")),
            filename=_as_str(obj.get("filename")),
            sha256=_as_str(obj.get("sha256")),
            voice=type_tag == "voice" or bool(obj.get("voice")),
        )

    if type_tag == "location":
        obj = raw.get("location")
        if not isinstance(obj, dict):
            return LocationEvent(present=False)
        return LocationEvent(
            latitude=_as_float(obj.get("latitude")),
            longitude=_as_float(obj.get("longitude")),
            name=_as_str(obj.get("name")),
            address=_as_str(obj.get("address")),
        )

    if type_tag in ("contacts", "contact"):
        contacts = raw.get("contacts")
        if not isinstance(contacts, list):
            contacts = []
        return ContactShareEvent(contacts=tuple(c for c in contacts if isinstance(c, dict)))

    if type_tag == "interactive":
        obj = raw.get("interactive")
        if not isinstance(obj, dict):
            return InteractiveEvent(present=False)
        interactive_type = _as_str(obj.get("type"))
        reply = _sub(obj, interactive_type) if interactive_type else {}
        return InteractiveEvent(
            interactive_type=interactive_type,
            title=_as_str(reply.get("title")),
            reply_id=_as_str(reply.get("id")),
            data=obj,
        )

    if type_tag == "reaction":
        obj = raw.get("reaction")
        if not isinstance(obj, dict):
            return ReactionEvent(present=False)
        return ReactionEvent(
            emoji=_as_str(obj.get("emoji")),
            message_id=_as_str(obj.get("message_id")),
        )

    return UnknownEvent(type_tag=type_tag, raw=raw)


def classify(event: RawEvent) -> CanonicalMessage:
    """Classify a parsed event into a received CanonicalMessage skeleton.

    Identity and conversation are left unresolved.
    """
    kind, content, media, detail = _classify_body(event.body)
    return CanonicalMessage(
        direction="received",
        address=event.address,
        content=content or f"[{event.type_tag.upper()} Message]",
        kind=kind,
        timestamp=event.timestamp,
        provider_message_id=event.provider_message_id,
        status="delivered",
        media=media,
        detail=detail,
        raw_type=event.type_tag,
    )


def _classify_body(
    body: EventBody,
) -> tuple[MessageKind, str, MediaReference | None, dict[str, Any] | None]:
    if isinstance(body, TextEvent):
        return MessageKind.TEXT, body.body or "[Text Message]", None, None

    if isinstance(body, MediaEvent):
        return _classify_media(body)

    if isinstance(body, LocationEvent):
        if not body.present:
            return MessageKind.LOCATION, "Location", None, None
        content = (
            f"Location: {body.name or 'Shared Location'} "
            f"({_coord(body.latitude)}, {_coord(body.longitude)})"
        )
        detail = {
            "type": "location",
            "latitude": body.latitude,
            "longitude": body.longitude,
            "name": body.name or "",
            "address": body.address or "",
        }
        return MessageKind.LOCATION, content, None, detail

    if isinstance(body, ContactShareEvent):
        names = [_contact_display_name(c) for c in body.contacts]
        names = [n for n in names if n]
        content = f"Contact Shared: {', '.join(names)}" if names else "Contact Shared"
        return MessageKind.CONTACT_SHARE, content, None, {
            "type": "contact",
            "contacts": list(body.contacts),
        }

    if isinstance(body, InteractiveEvent):
        if not body.present:
            return MessageKind.INTERACTIVE, "Interactive", None, None
        if body.interactive_type == "button_reply":
            content = f"Button: {body.title or 'Button Clicked'}"
        elif body.interactive_type == "list_reply":
            content = f"List Selection: {body.title or 'List Item Selected'}"
        else:
            content = "Interactive Message"
        return MessageKind.INTERACTIVE, content, None, {
            "type": "interactive",
            "interactive_type": body.interactive_type,
            "data": body.data,
        }

    if isinstance(body, ReactionEvent):
        if not body.present:
            return MessageKind.REACTION, "Reaction", None, None
        if body.emoji:
            content = f"Reaction {body.emoji} to message {body.message_id or 'unknown'}"
        else:
            # empty emoji means the sender removed their reaction
            content = f"Reaction removed from message {body.message_id or 'unknown'}"
        return MessageKind.REACTION, content, None, {
            "type": "reaction",
            "emoji": body.emoji or "",
            "message_id": body.message_id,
        }

    if isinstance(body, UnknownEvent):
        media = MediaReference(
            kind=body.type_tag,
            status=AcquisitionStatus.NOT_APPLICABLE,
            raw=body.raw,
        )
        return MessageKind.UNKNOWN, f"[{body.type_tag.upper()} Message]", media, None

    raise TypeError(f"unhandled event body: {type(body).__name__}")


def _classify_media(
    body: MediaEvent,
) -> tuple[MessageKind, str, MediaReference | None, dict[str, Any] | None]:
    label = _MEDIA_LABELS[body.kind]
    if not body.present:
        return body.kind, label, None, None

    mime = body.mime_type or _DEFAULT_MIME[body.kind]
    media = MediaReference(
        kind=body.kind.value,
        mime_type=mime,
        file_size=body.file_size,
        provider_handle=body.media_id,
        status=AcquisitionStatus.PENDING if body.media_id else AcquisitionStatus.UNRESOLVED,
        caption=body.caption,
        filename=body.filename,
        sha256=body.sha256,
    )
    content = describe_media(
        body.kind,
        mime_type=mime,
        file_size=body.file_size,
        caption=body.caption,
        filename=body.filename,
    )
    detail = {"voice_message": True} if body.voice else None
    return body.kind, content, media, detail


def _contact_display_name(contact: dict[str, Any]) -> str:
    name = contact.get("name")
    if isinstance(name, dict):
        return str(name.get("formatted_name") or name.get("first_name") or "")
    return ""


def _coord(value: float | None) -> str:
    return "?" if value is None else str(value)


def _sub(obj: dict[str, Any], key: str | None) -> dict[str, Any]:
    value = obj.get(key) if key else None
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
