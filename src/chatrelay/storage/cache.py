"""Bounded in-memory message store.

Used when PostgreSQL is not configured at startup, and as the degrade path
when it becomes unreachable. Two bounds apply:

- per conversation, at most `max_messages` entries; the oldest are dropped
  on write (a deque pop, constant cost)
- at most `max_conversations` keys; the least recently active conversations
  (by last-message timestamp) are evicted by `sweep()`, which runs on a
  timer rather than on every write

Locking: `_guard` protects the key map and the provider-id index and is
only held for dict operations. Everything that reads or mutates an entry
holds that entry's key lock. The sweep evicts a key only while holding its
key lock, so a writer never mutates an entry that has just been evicted.
"""

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal

from chatrelay.infra.locks import KeyedLocks
from chatrelay.messages.models import (
    STATUS_RANK,
    CanonicalMessage,
    Conversation,
    Identity,
    StoredMessage,
)
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context

from .base import (
    ConversationSummary,
    default_contact_name,
    preview_text,
    unread_increment,
)

logger = get_logger(__name__)

DEFAULT_MAX_CONVERSATIONS = 100
DEFAULT_MAX_MESSAGES = 200

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class CacheEntry:
    """Cached conversation: recent messages plus summary fields."""

    address: str
    contact_name: str
    messages: deque = field(default_factory=deque)
    message_ids: set[str] = field(default_factory=set)
    message_count: int = 0
    contact_last_message_at: datetime | None = None
    unread_count: int = 0
    last_message: str | None = None
    last_message_at: datetime | None = None
    is_active: bool = True

    def identity(self) -> Identity:
        return Identity(
            id=None,
            address=self.address,
            name=self.contact_name,
            message_count=self.message_count,
            last_message_at=self.contact_last_message_at,
        )

    def conversation(self) -> Conversation:
        return Conversation(
            id=None,
            address=self.address,
            contact_id=None,
            unread_count=self.unread_count,
            last_message=self.last_message,
            last_message_at=self.last_message_at,
            is_active=self.is_active,
        )


@dataclass(frozen=True)
class SweepResult:
    evicted: tuple[str, ...]
    remaining: int


class BoundedCacheStore:
    """In-memory MessageStore with capacity bounds."""

    kind: Literal["durable", "cache"] = "cache"

    def __init__(
        self,
        max_conversations: int = DEFAULT_MAX_CONVERSATIONS,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> None:
        if max_conversations < 1 or max_messages < 1:
            raise ValueError("cache bounds must be positive")
        self.max_conversations = max_conversations
        self.max_messages = max_messages
        self._entries: dict[str, CacheEntry] = {}
        self._id_index: dict[str, str] = {}
        self._guard = threading.Lock()
        self._keys = KeyedLocks()
        self._sweep_lock = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def __contains__(self, address: object) -> bool:
        with self._guard:
            return address in self._entries

    def _get_or_create(self, address: str, name: str | None, at: datetime) -> tuple[CacheEntry, bool]:
        # caller holds the key lock
        with self._guard:
            entry = self._entries.get(address)
            if entry is not None:
                return entry, False
            entry = CacheEntry(
                address=address,
                contact_name=name or default_contact_name(address),
                last_message_at=at,
            )
            self._entries[address] = entry
            return entry, True

    def resolve_identity(
        self, address: str, name: str | None, at: datetime
    ) -> tuple[Identity, Conversation, bool]:
        with self._keys.hold(address):
            entry, created = self._get_or_create(address, name, at)
            if created:
                entry.message_count = 1
            else:
                entry.message_count += 1
                if name:
                    entry.contact_name = name
            entry.contact_last_message_at = at
            return entry.identity(), entry.conversation(), created

    def find_message(self, address: str, provider_message_id: str) -> StoredMessage | None:
        with self._keys.hold(address):
            with self._guard:
                entry = self._entries.get(address)
            if entry is None or provider_message_id not in entry.message_ids:
                return None
            for stored in entry.messages:
                if stored.provider_message_id == provider_message_id:
                    return replace(stored, duplicate=True)
            return None

    def save_message(self, message: CanonicalMessage) -> StoredMessage:
        with self._keys.hold(message.address):
            entry, _ = self._get_or_create(message.address, message.contact_name, message.timestamp)
            return self._append(entry, message)

    def save_degraded(self, message: CanonicalMessage) -> StoredMessage:
        """Save a message whose identity was resolved outside this cache.

        The entry's identity fields follow the message the way
        `resolve_identity` would have moved them.
        """
        address = message.address
        with self._keys.hold(address):
            entry, _ = self._get_or_create(address, message.contact_name, message.timestamp)
            stored = self._append(entry, message)
            if stored.duplicate:
                return stored
            entry.message_count += 1
            entry.contact_last_message_at = message.timestamp
            name = message.contact_name
            if name and name != default_contact_name(address):
                entry.contact_name = name
            return stored

    def _append(self, entry: CacheEntry, message: CanonicalMessage) -> StoredMessage:
        # caller holds the key lock
        pid = message.provider_message_id
        if pid and pid in entry.message_ids:
            for stored in entry.messages:
                if stored.provider_message_id == pid:
                    return replace(stored, duplicate=True)

        stored = StoredMessage(id=None, message=message, store="cache")
        entry.messages.append(stored)
        if pid:
            entry.message_ids.add(pid)
            with self._guard:
                self._id_index[pid] = entry.address

        while len(entry.messages) > self.max_messages:
            dropped = entry.messages.popleft()
            self._forget_id(entry, dropped.provider_message_id)

        entry.last_message = preview_text(message.content, message.media)
        entry.last_message_at = message.timestamp
        entry.unread_count += unread_increment(message)
        return stored

    def _forget_id(self, entry: CacheEntry, pid: str | None) -> None:
        if not pid:
            return
        entry.message_ids.discard(pid)
        with self._guard:
            if self._id_index.get(pid) == entry.address:
                del self._id_index[pid]

    def update_status(self, provider_message_id: str, status: str) -> bool:
        with self._guard:
            address = self._id_index.get(provider_message_id)
        if address is None:
            return False

        with self._keys.hold(address):
            with self._guard:
                entry = self._entries.get(address)
            if entry is None:
                return False
            for index, stored in enumerate(entry.messages):
                if stored.provider_message_id != provider_message_id:
                    continue
                current = stored.message.status
                if STATUS_RANK.get(status, -1) <= STATUS_RANK.get(current, -1):
                    return False
                entry.messages[index] = replace(
                    stored, message=replace(stored.message, status=status)
                )
                return True
        return False

    def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        with self._guard:
            entries = list(self._entries.values())

        summaries = []
        for entry in entries:
            with self._keys.hold(entry.address):
                summaries.append(
                    ConversationSummary(
                        address=entry.address,
                        contact_name=entry.contact_name,
                        unread_count=entry.unread_count,
                        last_message=entry.last_message,
                        last_message_at=entry.last_message_at,
                        total_messages=len(entry.messages),
                    )
                )
        summaries.sort(key=lambda s: s.last_message_at or _EPOCH, reverse=True)
        return summaries[:limit]

    def list_messages(self, address: str, limit: int = 200) -> list[StoredMessage]:
        with self._keys.hold(address):
            with self._guard:
                entry = self._entries.get(address)
            if entry is None:
                return []
            recent = list(entry.messages)[-limit:] if limit > 0 else []
        return sorted(recent, key=lambda s: s.message.timestamp)

    def mark_read(self, address: str) -> None:
        with self._keys.hold(address):
            with self._guard:
                entry = self._entries.get(address)
            if entry is not None:
                entry.unread_count = 0

    def sweep(self) -> SweepResult | None:
        """Evict least recently active conversations beyond the key cap.

        Returns None without doing anything if another sweep is running.
        """
        if not self._sweep_lock.acquire(blocking=False):
            return None
        try:
            with self._guard:
                snapshot = [(e.address, e.last_message_at or _EPOCH) for e in self._entries.values()]
            overflow = len(snapshot) - self.max_conversations
            if overflow <= 0:
                return SweepResult(evicted=(), remaining=len(snapshot))

            snapshot.sort(key=lambda item: item[1])
            evicted = []
            for address, _ in snapshot[:overflow]:
                with self._keys.hold(address):
                    with self._guard:
                        entry = self._entries.pop(address, None)
                        if entry is None:
                            continue
                        for pid in entry.message_ids:
                            if self._id_index.get(pid) == address:
                                del self._id_index[pid]
                    evicted.append(address)

            remaining = len(self)
            logger.info(
                "cache sweep evicted conversations",
                extra={
                    "extra_fields": safe_log_context(
                        evicted=len(evicted), remaining=remaining
                    )
                },
            )
            return SweepResult(evicted=tuple(evicted), remaining=remaining)
        finally:
            self._sweep_lock.release()


class CacheSweeper:
    """Runs `store.sweep()` every `interval` seconds on a daemon thread."""

    def __init__(self, store: BoundedCacheStore, interval: float) -> None:
        self._store = store
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cache-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._store.sweep()
            except Exception:
                logger.exception("cache sweep failed")
