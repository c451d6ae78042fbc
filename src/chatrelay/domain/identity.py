"""Identity resolution - find-or-create contact and chat, once per message."""

from dataclasses import dataclass
from datetime import datetime

from chatrelay.messages.models import Conversation, Identity
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context
from chatrelay.storage.base import MessageStore, StoreUnavailableError, default_contact_name

logger = get_logger(__name__)


@dataclass(frozen=True)
class Resolution:
    identity: Identity
    conversation: Conversation
    created: bool

    @property
    def ephemeral(self) -> bool:
        return self.identity.ephemeral


def ephemeral_pair(address: str, name: str | None, at: datetime) -> tuple[Identity, Conversation]:
    """Synthesize an unpersisted Identity/Conversation for degraded mode."""
    identity = Identity(
        id=None,
        address=address,
        name=name or default_contact_name(address),
        message_count=1,
        last_message_at=at,
    )
    conversation = Conversation(
        id=None,
        address=address,
        contact_id=None,
        last_message_at=at,
    )
    return identity, conversation


def resolve_identity(
    store: MessageStore,
    address: str,
    name: str | None,
    at: datetime,
) -> Resolution:
    """Find-or-create the Identity and Conversation for address.

    Touches the identity counters. Store unavailability does not fail the
    caller: an ephemeral pair comes back instead, so the message can still
    reach the cache and the fan-out consumers.

    Args:
        store: Active message store.
        address: Provider address (phone number).
        name: Display name, if the provider supplied one.
        at: Event timestamp used as last activity.

    Returns:
        Resolution with identity, conversation and whether it was created.
    """
    try:
        identity, conversation, created = store.resolve_identity(address, name, at)
    except StoreUnavailableError as e:
        logger.warning(
            "store unavailable during identity resolution, using ephemeral identity",
            extra={
                "extra_fields": safe_log_context(
                    address_hash=hash_identifier(address),
                    store=store.kind,
                    error_type=type(e.__cause__ or e).__name__,
                )
            },
        )
        identity, conversation = ephemeral_pair(address, name, at)
        return Resolution(identity=identity, conversation=conversation, created=False)

    if created:
        logger.info(
            "identity created",
            extra={
                "extra_fields": safe_log_context(
                    address_hash=hash_identifier(address),
                    store=store.kind,
                )
            },
        )
    return Resolution(identity=identity, conversation=conversation, created=created)
