"""PostgreSQL message store.

Concurrency:
- contacts/chats are upserted with INSERT ... ON CONFLICT, so concurrent
  first messages from one address create exactly one row each
- save_message locks the chat row (SELECT ... FOR UPDATE) before inserting
  and updating the summary, serializing messages of one conversation
- duplicate provider ids are rejected by the partial unique index on
  messages.whatsapp_message_id
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Literal

import psycopg2
from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json

from chatrelay.infra.db import UNAVAILABLE_ERRORS, fetchall, fetchone, for_update, txn
from chatrelay.messages.models import (
    CanonicalMessage,
    Conversation,
    Identity,
    MediaReference,
    MessageKind,
    StoredMessage,
)

from .base import (
    ConversationSummary,
    PersistenceError,
    StoreUnavailableError,
    default_contact_name,
    preview_text,
    unread_increment,
)

_CONTACT_COLUMNS = "id, phone_number, name, message_count, last_message_at, status, tags"
_CHAT_COLUMNS = "id, phone_number, contact_id, unread_count, last_message, last_message_at, is_active"
_MESSAGE_COLUMNS = (
    "m.id, m.message_type, m.content, m.media_info, m.media_type, "
    "m.message_type_detail, m.whatsapp_message_id, m.status, m.timestamp, ct.name"
)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except UNAVAILABLE_ERRORS as e:
        raise StoreUnavailableError(str(e)) from e
    except psycopg2.Error as e:
        raise PersistenceError(str(e)) from e


def _identity_from_row(row: tuple[Any, ...]) -> Identity:
    return Identity(
        id=row[0],
        address=row[1],
        name=row[2] or default_contact_name(row[1]),
        message_count=row[3] or 0,
        last_message_at=row[4],
        status=row[5] or "new",
        tags=tuple(row[6] or ()),
    )


def _conversation_from_row(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=row[0],
        address=row[1],
        contact_id=row[2],
        unread_count=row[3] or 0,
        last_message=row[4],
        last_message_at=row[5],
        is_active=bool(row[6]),
    )


def _media_info(message: CanonicalMessage) -> dict[str, Any] | None:
    if message.media is not None:
        return message.media.to_dict()
    return message.detail


def _stored_from_row(row: tuple[Any, ...], address: str, duplicate: bool = False) -> StoredMessage:
    (row_id, direction, content, media_info, media_type, kind, pid, status, timestamp, name) = row
    try:
        message_kind = MessageKind(kind)
    except ValueError:
        message_kind = MessageKind.UNKNOWN

    media = None
    detail = None
    if media_type and isinstance(media_info, dict):
        media = MediaReference.from_dict(media_info)
    elif isinstance(media_info, dict):
        detail = media_info

    message = CanonicalMessage(
        direction=direction,
        address=address,
        content=content or "",
        kind=message_kind,
        timestamp=timestamp,
        provider_message_id=pid,
        status=status,
        media=media,
        detail=detail,
        contact_name=name,
    )
    return StoredMessage(id=row_id, message=message, store="durable", duplicate=duplicate)


class DurableStore:
    """MessageStore backed by the contacts/chats/messages tables."""

    kind: Literal["durable", "cache"] = "durable"

    def resolve_identity(
        self, address: str, name: str | None, at: datetime
    ) -> tuple[Identity, Conversation, bool]:
        with _translate_errors(), txn() as cur:
            row = fetchone(
                cur,
                f"""
                INSERT INTO contacts (phone_number, name, last_message_at, message_count)
                VALUES (%s, %s, %s, 1)
                ON CONFLICT (phone_number) DO UPDATE
                SET message_count = contacts.message_count + 1,
                    last_message_at = EXCLUDED.last_message_at,
                    name = COALESCE(%s, contacts.name),
                    updated_at = now()
                RETURNING {_CONTACT_COLUMNS}, (xmax = 0) AS created
                """,
                (address, name or default_contact_name(address), at, name),
            )
            identity = _identity_from_row(row)
            created = bool(row[7])

            cur.execute(
                """
                INSERT INTO chats (contact_id, phone_number, unread_count, last_message_at)
                VALUES (%s, %s, 0, %s)
                ON CONFLICT (phone_number) DO NOTHING
                """,
                (identity.id, address, at),
            )
            chat_row = fetchone(
                cur,
                f"SELECT {_CHAT_COLUMNS} FROM chats WHERE phone_number = %s",
                (address,),
            )
        return identity, _conversation_from_row(chat_row), created

    def find_message(self, address: str, provider_message_id: str) -> StoredMessage | None:
        with _translate_errors(), txn() as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m
                LEFT JOIN contacts ct ON m.contact_id = ct.id
                WHERE m.whatsapp_message_id = %s
                """,
                (provider_message_id,),
            )
        if row is None:
            return None
        return _stored_from_row(row, address, duplicate=True)

    def save_message(self, message: CanonicalMessage) -> StoredMessage:
        identity = message.identity
        if identity is None or identity.id is None:
            raise PersistenceError("durable store requires a persisted identity")

        with _translate_errors(), txn() as cur:
            chat = for_update(
                cur,
                "SELECT id, contact_id FROM chats WHERE phone_number = %s",
                (message.address,),
            )
            if chat is None:
                raise PersistenceError("conversation row missing for message")
            chat_id = chat[0]

            media_info = _media_info(message)
            row = fetchone(
                cur,
                """
                INSERT INTO messages
                    (chat_id, contact_id, message_type, content, whatsapp_message_id,
                     status, timestamp, message_type_detail, media_info, media_type)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (whatsapp_message_id) WHERE whatsapp_message_id IS NOT NULL
                DO NOTHING
                RETURNING id
                """,
                (
                    chat_id,
                    identity.id,
                    message.direction,
                    message.content,
                    message.provider_message_id,
                    message.status,
                    message.timestamp,
                    message.kind.value,
                    Json(media_info) if media_info is not None else None,
                    message.media.kind if message.media is not None else None,
                ),
            )

            if row is None:
                existing = self._fetch_by_provider_id(cur, message.provider_message_id)
                if existing is None:
                    raise PersistenceError("insert skipped but no existing message found")
                # resolve_identity already counted this delivery
                cur.execute(
                    """
                    UPDATE contacts
                    SET message_count = GREATEST(message_count - 1, 0)
                    WHERE id = %s
                    """,
                    (identity.id,),
                )
                return _stored_from_row(existing, message.address, duplicate=True)

            cur.execute(
                """
                UPDATE chats
                SET last_message = %s,
                    last_message_at = %s,
                    unread_count = unread_count + %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (
                    preview_text(message.content, message.media),
                    message.timestamp,
                    unread_increment(message),
                    chat_id,
                ),
            )
        return StoredMessage(id=row[0], message=message, store="durable")

    def _fetch_by_provider_id(self, cur: PgCursor, provider_message_id: str | None) -> tuple[Any, ...] | None:
        if provider_message_id is None:
            return None
        return fetchone(
            cur,
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            LEFT JOIN contacts ct ON m.contact_id = ct.id
            WHERE m.whatsapp_message_id = %s
            """,
            (provider_message_id,),
        )

    def update_status(self, provider_message_id: str, status: str) -> bool:
        # status only moves forward: sent < delivered < read < failed
        with _translate_errors(), txn() as cur:
            cur.execute(
                """
                UPDATE messages
                SET status = %s
                WHERE whatsapp_message_id = %s
                  AND array_position(ARRAY['sent','delivered','read','failed'], status)
                      < array_position(ARRAY['sent','delivered','read','failed'], %s::text)
                """,
                (status, provider_message_id, status),
            )
            return cur.rowcount > 0

    def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        with _translate_errors(), txn() as cur:
            rows = fetchall(
                cur,
                """
                SELECT c.id, c.phone_number, ct.name, c.unread_count, c.last_message,
                       c.last_message_at, ct.status,
                       (SELECT COUNT(*) FROM messages m WHERE m.chat_id = c.id)
                FROM chats c
                LEFT JOIN contacts ct ON c.contact_id = ct.id
                WHERE c.is_active = TRUE
                ORDER BY c.last_message_at DESC NULLS LAST
                LIMIT %s
                """,
                (limit,),
            )
        return [
            ConversationSummary(
                chat_id=row[0],
                address=row[1],
                contact_name=row[2] or default_contact_name(row[1]),
                unread_count=row[3] or 0,
                last_message=row[4],
                last_message_at=row[5],
                contact_status=row[6] or "new",
                total_messages=int(row[7] or 0),
            )
            for row in rows
        ]

    def list_messages(self, address: str, limit: int = 200) -> list[StoredMessage]:
        with _translate_errors(), txn() as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT * FROM (
                    SELECT {_MESSAGE_COLUMNS}
                    FROM messages m
                    JOIN chats c ON m.chat_id = c.id
                    LEFT JOIN contacts ct ON m.contact_id = ct.id
                    WHERE c.phone_number = %s
                    ORDER BY m.timestamp DESC, m.id DESC
                    LIMIT %s
                ) recent
                ORDER BY recent.timestamp ASC, recent.id ASC
                """,
                (address, limit),
            )
        return [_stored_from_row(row, address) for row in rows]

    def mark_read(self, address: str) -> None:
        with _translate_errors(), txn() as cur:
            cur.execute(
                """
                UPDATE chats
                SET unread_count = 0,
                    updated_at = now()
                WHERE phone_number = %s
                """,
                (address,),
            )
