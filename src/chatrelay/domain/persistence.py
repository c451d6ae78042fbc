"""Persistence manager - durable store with a bounded cache degrade path.

The primary store is chosen once at startup by `select_store`. When it is
the durable store, a BoundedCacheStore is kept beside it and takes writes
whenever PostgreSQL is unreachable or the message carries an ephemeral
identity (resolved while the database was down). Callers never see which
store served them, except through `StoredMessage.store`.
"""

from chatrelay.infra import db
from chatrelay.infra.settings import PipelineSettings
from chatrelay.messages.models import CanonicalMessage, StoredMessage
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, message_id_prefix, safe_log_context
from chatrelay.storage.base import ConversationSummary, MessageStore, StoreUnavailableError
from chatrelay.storage.cache import BoundedCacheStore
from chatrelay.storage.durable import DurableStore

logger = get_logger(__name__)


class PipelineInvariantError(Exception):
    """Raised when a message reaches persistence in an impossible state."""

    pass


def select_store(settings: PipelineSettings) -> tuple[MessageStore, BoundedCacheStore]:
    """Pick the primary store for this process.

    Returns (primary, cache). When DATABASE_URL is not set the cache is the
    primary store.
    """
    cache = BoundedCacheStore(
        max_conversations=settings.cache_max_conversations,
        max_messages=settings.cache_max_messages,
    )
    if not db.is_configured():
        logger.warning("DATABASE_URL not set, running on bounded cache store")
        return cache, cache

    if not db.ping():
        logger.warning("database unreachable at startup, writes degrade to cache until it recovers")
    return DurableStore(), cache


def check_invariants(message: CanonicalMessage) -> None:
    """Validate that message is bound to a consistent identity and conversation.

    Raises:
        PipelineInvariantError: On any violation.
    """
    identity = message.identity
    conversation = message.conversation
    if identity is None:
        raise PipelineInvariantError("message has no identity")
    if conversation is None:
        raise PipelineInvariantError("message has no conversation")
    if not message.address:
        raise PipelineInvariantError("message has no address")
    if identity.address != message.address or conversation.address != message.address:
        raise PipelineInvariantError("conversation referenced without matching identity")
    if (
        identity.id is not None
        and conversation.contact_id is not None
        and conversation.contact_id != identity.id
    ):
        raise PipelineInvariantError("conversation belongs to a different identity")
    if not message.content:
        raise PipelineInvariantError("message content is empty")


class PersistenceManager:
    """Writes canonical messages to the active store."""

    def __init__(self, primary: MessageStore, cache: BoundedCacheStore | None = None) -> None:
        self.primary = primary
        if cache is None:
            if not isinstance(primary, BoundedCacheStore):
                raise ValueError("a cache store is required beside a durable primary")
            cache = primary
        self.cache = cache

    @property
    def degraded_capable(self) -> bool:
        return self.primary is not self.cache

    def persist(self, message: CanonicalMessage) -> StoredMessage:
        """Store message, falling back to the cache when the primary is down.

        Raises:
            PipelineInvariantError: If message is not bound consistently.
            PersistenceError: If the durable store rejects the write.
        """
        check_invariants(message)

        identity = message.identity
        if identity is None:
            raise PipelineInvariantError("message has no identity")

        if not self.degraded_capable:
            return self.cache.save_message(message)

        if identity.ephemeral:
            self._log_degraded(message, reason="ephemeral_identity")
        else:
            try:
                return self.primary.save_message(message)
            except StoreUnavailableError:
                self._log_degraded(message, reason="store_unavailable")

        return self.cache.save_degraded(message)

    def find_existing(self, address: str, provider_message_id: str) -> StoredMessage | None:
        """Look up a previously stored message by provider id in either store."""
        if self.degraded_capable:
            try:
                found = self.primary.find_message(address, provider_message_id)
            except StoreUnavailableError:
                found = None
            if found is not None:
                return found
        return self.cache.find_message(address, provider_message_id)

    def update_status(self, provider_message_id: str, status: str) -> bool:
        updated = False
        if self.degraded_capable:
            try:
                updated = self.primary.update_status(provider_message_id, status)
            except StoreUnavailableError:
                logger.warning(
                    "store unavailable, status update applied to cache only",
                    extra={
                        "extra_fields": safe_log_context(
                            message_id=message_id_prefix(provider_message_id)
                        )
                    },
                )
        return self.cache.update_status(provider_message_id, status) or updated

    def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        if self.degraded_capable:
            try:
                return self.primary.list_conversations(limit)
            except StoreUnavailableError:
                logger.warning("store unavailable, listing conversations from cache")
        return self.cache.list_conversations(limit)

    def list_messages(self, address: str, limit: int = 200) -> list[StoredMessage]:
        if self.degraded_capable:
            try:
                return self.primary.list_messages(address, limit)
            except StoreUnavailableError:
                logger.warning("store unavailable, listing messages from cache")
        return self.cache.list_messages(address, limit)

    def mark_read(self, address: str) -> None:
        if self.degraded_capable:
            try:
                self.primary.mark_read(address)
            except StoreUnavailableError:
                logger.warning("store unavailable, marking read in cache only")
        self.cache.mark_read(address)

    def _log_degraded(self, message: CanonicalMessage, *, reason: str) -> None:
        logger.warning(
            "durable store unavailable, writing message to cache (degraded mode)",
            extra={
                "extra_fields": safe_log_context(
                    reason=reason,
                    address_hash=hash_identifier(message.address),
                    message_id=message_id_prefix(message.provider_message_id),
                )
            },
        )
