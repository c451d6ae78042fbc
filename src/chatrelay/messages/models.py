"""Canonical message model.

Every stage after classification works on these types. Raw provider events
are first parsed into one of the `*Event` variants (one per kind family) and
then classified into a `CanonicalMessage`.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

Direction = Literal["received", "sent"]
DeliveryStatus = Literal["sent", "delivered", "read", "failed"]

VALID_STATUSES: set[str] = {"sent", "delivered", "read", "failed"}

# Delivery status can only move forward; "failed" is terminal from any state
STATUS_RANK: dict[str, int] = {"sent": 0, "delivered": 1, "read": 2, "failed": 3}


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT_SHARE = "contact_share"
    INTERACTIVE = "interactive"
    REACTION = "reaction"
    UNKNOWN = "unknown"


# Kinds whose payload lives behind a provider media handle
BINARY_KINDS: frozenset[MessageKind] = frozenset({
    MessageKind.IMAGE,
    MessageKind.AUDIO,
    MessageKind.VIDEO,
    MessageKind.DOCUMENT,
    MessageKind.STICKER,
})


class AcquisitionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class Identity:
    """Contact keyed by provider address. `id` is None when ephemeral."""

    id: int | None
    address: str
    name: str
    message_count: int = 0
    last_message_at: datetime | None = None
    status: str = "new"
    tags: tuple[str, ...] = ()

    @property
    def ephemeral(self) -> bool:
        return self.id is None


@dataclass(frozen=True)
class Conversation:
    """1:1 chat for an Identity, carrying summary state."""

    id: int | None
    address: str
    contact_id: int | None
    unread_count: int = 0
    last_message: str | None = None
    last_message_at: datetime | None = None
    is_active: bool = True

    @property
    def ephemeral(self) -> bool:
        return self.id is None


@dataclass(frozen=True)
class MediaReference:
    """Attachment metadata plus its resolved location, if acquired."""

    kind: str
    mime_type: str | None = None
    file_size: int | None = None
    provider_handle: str | None = None
    url: str | None = None
    status: AcquisitionStatus = AcquisitionStatus.PENDING
    caption: str | None = None
    filename: str | None = None
    sha256: str | None = None
    raw: dict[str, Any] | None = None

    @property
    def resolved(self) -> bool:
        return self.status is AcquisitionStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the media_info column and outbound payloads."""
        data: dict[str, Any] = {
            "type": self.kind,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "id": self.provider_handle,
            "url": self.url,
            "status": self.status.value,
        }
        if self.caption:
            data["caption"] = self.caption
        if self.filename:
            data["filename"] = self.filename
        if self.sha256:
            data["sha256"] = self.sha256
        if self.raw is not None:
            data["raw_data"] = self.raw
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MediaReference":
        try:
            status = AcquisitionStatus(data.get("status", "pending"))
        except ValueError:
            status = AcquisitionStatus.UNRESOLVED
        return cls(
            kind=str(data.get("type", "unknown")),
            mime_type=data.get("mime_type"),
            file_size=data.get("file_size"),
            provider_handle=data.get("id"),
            url=data.get("url"),
            status=status,
            caption=data.get("caption"),
            filename=data.get("filename"),
            sha256=data.get("sha256"),
            raw=data.get("raw_data"),
        )


@dataclass(frozen=True)
class CanonicalMessage:
    """Normalized message, before and after identity resolution.

    `identity` and `conversation` are None only between classification and
    resolution; persistence refuses a message without them.
    """

    direction: Direction
    address: str
    content: str
    kind: MessageKind
    timestamp: datetime
    provider_message_id: str | None = None
    status: DeliveryStatus = "delivered"
    media: MediaReference | None = None
    detail: dict[str, Any] | None = None
    raw_type: str | None = None
    contact_name: str | None = None
    identity: Identity | None = None
    conversation: Conversation | None = None

    def with_media(self, media: MediaReference, content: str | None = None) -> "CanonicalMessage":
        return replace(self, media=media, content=content or self.content)

    def bound_to(self, identity: Identity, conversation: Conversation) -> "CanonicalMessage":
        return replace(self, identity=identity, conversation=conversation)

    @property
    def preview_type(self) -> str:
        return self.raw_type or self.kind.value


@dataclass(frozen=True)
class StoredMessage:
    """A message after persistence. `id` is None for cache-held messages."""

    id: int | None
    message: CanonicalMessage
    store: Literal["durable", "cache"]
    duplicate: bool = False

    @property
    def provider_message_id(self) -> str | None:
        return self.message.provider_message_id

    @property
    def public_id(self) -> str | int | None:
        """Identifier shown to dashboards: row id if any, provider id otherwise."""
        return self.id if self.id is not None else self.message.provider_message_id


# --- raw event variants --------------------------------------------------


@dataclass(frozen=True)
class TextEvent:
    body: str | None


@dataclass(frozen=True)
class MediaEvent:
    kind: MessageKind
    media_id: str | None = None
    mime_type: str | None = None
    file_size: int | None = None
    caption: str | None = None
    filename: str | None = None
    sha256: str | None = None
    voice: bool = False
    present: bool = True


@dataclass(frozen=True)
class LocationEvent:
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None
    present: bool = True


@dataclass(frozen=True)
class ContactShareEvent:
    contacts: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class InteractiveEvent:
    interactive_type: str | None = None
    title: str | None = None
    reply_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    present: bool = True


@dataclass(frozen=True)
class ReactionEvent:
    emoji: str | None = None
    message_id: str | None = None
    present: bool = True


@dataclass(frozen=True)
class UnknownEvent:
    type_tag: str
    raw: dict[str, Any] = field(default_factory=dict)


EventBody = Union[
    TextEvent,
    MediaEvent,
    LocationEvent,
    ContactShareEvent,
    InteractiveEvent,
    ReactionEvent,
    UnknownEvent,
]


@dataclass(frozen=True)
class RawEvent:
    """Envelope fields shared by every provider message, plus its variant body."""

    address: str
    provider_message_id: str | None
    timestamp: datetime
    type_tag: str
    body: EventBody
    raw: dict[str, Any] = field(default_factory=dict)
