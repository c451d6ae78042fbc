"""Store interface shared by the durable and cache implementations."""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

from chatrelay.messages.models import (
    CanonicalMessage,
    Conversation,
    Identity,
    MediaReference,
    StoredMessage,
)

# Preview text kept on the conversation row
PREVIEW_MAX_LENGTH = 200

_PREVIEW_LABELS: dict[str, str] = {
    "image": "Image",
    "audio": "Audio Message",
    "video": "Video",
    "document": "Document",
}


class StoreError(Exception):
    """Base error for store operations."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached."""

    pass


class PersistenceError(StoreError):
    """Raised when a reachable store rejects a write."""

    pass


@dataclass(frozen=True)
class ConversationSummary:
    """Read-side view of a conversation for dashboards."""

    address: str
    contact_name: str
    unread_count: int
    last_message: str | None
    last_message_at: datetime | None
    total_messages: int
    contact_status: str = "new"
    chat_id: int | None = None


class MessageStore(Protocol):
    """Storage strategy behind the persistence manager."""

    kind: Literal["durable", "cache"]

    def resolve_identity(
        self, address: str, name: str | None, at: datetime
    ) -> tuple[Identity, Conversation, bool]:
        """Find-or-create the contact and chat for address, touching counters.

        Returns (identity, conversation, created).
        """
        ...

    def find_message(self, address: str, provider_message_id: str) -> StoredMessage | None:
        ...

    def save_message(self, message: CanonicalMessage) -> StoredMessage:
        """Insert message and update the conversation summary atomically.

        Idempotent on provider_message_id: a second save returns the first
        stored message with `duplicate=True` and leaves the summary untouched.
        """
        ...

    def update_status(self, provider_message_id: str, status: str) -> bool:
        ...

    def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        ...

    def list_messages(self, address: str, limit: int = 200) -> list[StoredMessage]:
        ...

    def mark_read(self, address: str) -> None:
        ...


def default_contact_name(address: str) -> str:
    return f"+{address}" if address and not address.startswith("+") else address


def preview_text(content: str | None, media: MediaReference | None = None) -> str | None:
    """Conversation preview: content truncated, or a media label when empty."""
    if content:
        return content[:PREVIEW_MAX_LENGTH]
    if media is None:
        return None
    preview = _PREVIEW_LABELS.get(media.kind, "Media")
    if media.caption:
        preview += f": {media.caption[:100]}"
    return preview


def unread_increment(message: CanonicalMessage) -> int:
    """Only received messages count as unread."""
    return 1 if message.direction == "received" else 0
