"""Message ingestion pipeline.

raw event -> classify -> resolve identity -> acquire media -> persist -> fan-out

Stages for one message run in order on the caller's thread; only the
fan-out runs elsewhere. Re-deliveries of a provider message id are
detected before any side effect and return the stored message untouched.
"""

import time
from contextlib import nullcontext
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from chatrelay.domain.fanout import AutomationForwarder, FanoutDispatcher
from chatrelay.domain.identity import resolve_identity
from chatrelay.domain.persistence import PersistenceManager, select_store
from chatrelay.infra.blob_sink import LocalDirectorySink
from chatrelay.infra.locks import KeyedLocks
from chatrelay.infra.settings import PipelineSettings
from chatrelay.infra.time import utc_now
from chatrelay.messages.classifier import classify, parse_event
from chatrelay.messages.models import (
    AcquisitionStatus,
    CanonicalMessage,
    MediaReference,
    MessageKind,
    StoredMessage,
)
from chatrelay.observability.logging import bind_message_context, get_logger
from chatrelay.observability.redaction import hash_identifier, message_id_prefix, safe_log_context
from chatrelay.realtime.hub import SubscriberHub
from chatrelay.storage.cache import CacheSweeper
from chatrelay.whatsapp.media import MediaAcquirer
from chatrelay.whatsapp.models import StatusUpdate

logger = get_logger(__name__)


class InvalidEventError(Exception):
    """Raised when an event has no address to attach it to."""

    pass


@dataclass(frozen=True)
class IngestResult:
    stored: StoredMessage
    dispatch: Future | None = None

    @property
    def duplicate(self) -> bool:
        return self.stored.duplicate


class MessagePipeline:
    """Ingests inbound and outbound messages end to end."""

    def __init__(
        self,
        persistence: PersistenceManager,
        dispatcher: FanoutDispatcher,
        media: MediaAcquirer | None = None,
        *,
        hub: SubscriberHub | None = None,
        sweeper: CacheSweeper | None = None,
    ) -> None:
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.media = media
        self.hub = hub
        self.sweeper = sweeper
        self._in_flight = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "MessagePipeline":
        """Wire the production pipeline from environment settings."""
        primary, cache = select_store(settings)
        hub = SubscriberHub(put_timeout=settings.broadcast_timeout)
        forwarder = None
        if settings.n8n_webhook_url:
            forwarder = AutomationForwarder(settings.n8n_webhook_url, timeout=settings.n8n_timeout)
        else:
            logger.warning("N8N_WEBHOOK_URL not set, automation forwarding disabled")
        sink = LocalDirectorySink(settings.media_storage_dir, settings.media_public_base_url)
        return cls(
            PersistenceManager(primary, cache),
            FanoutDispatcher(hub, forwarder),
            MediaAcquirer.from_settings(settings, sink),
            hub=hub,
            sweeper=CacheSweeper(cache, settings.cache_sweep_interval),
        )

    @property
    def store_kind(self) -> str:
        return self.persistence.primary.kind

    def start(self) -> None:
        if self.sweeper is not None:
            self.sweeper.start()

    def close(self) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()
        self.dispatcher.shutdown(wait=False)

    def ingest_incoming(
        self,
        raw_message: dict[str, Any],
        *,
        contact_name: str | None = None,
        raw_payload: dict[str, Any] | None = None,
    ) -> IngestResult:
        """Ingest one provider message object.

        Args:
            raw_message: Entry of `value.messages[]`.
            contact_name: Sender profile name from the envelope, if any.
            raw_payload: Full webhook envelope, forwarded for traceability.

        Raises:
            InvalidEventError: If the message has no sender address.
            PipelineInvariantError: On an inconsistent identity binding.
            PersistenceError: If the durable store rejects the write.
        """
        event = parse_event(raw_message)
        if not event.address:
            raise InvalidEventError("message has no sender address")
        message = classify(event)
        return self._ingest(message, contact_name, raw_payload)

    def ingest_outgoing(
        self,
        to: str,
        text: str | None,
        *,
        message_id: str | None = None,
        contact_name: str | None = None,
        timestamp: datetime | None = None,
        media_url: str | None = None,
    ) -> IngestResult:
        """Ingest a message sent by the automation system or the dashboard."""
        if not to:
            raise InvalidEventError("outgoing message has no recipient")

        media = None
        if media_url:
            media = MediaReference(kind="media", url=media_url, status=AcquisitionStatus.RESOLVED)
        message = CanonicalMessage(
            direction="sent",
            address=to,
            content=text or "[Media]",
            kind=MessageKind.TEXT,
            timestamp=timestamp or utc_now(),
            provider_message_id=message_id or f"n8n-{int(time.time() * 1000)}",
            status="sent",
            media=media,
            raw_type="text",
        )
        return self._ingest(message, contact_name, None)

    def apply_status(self, update: StatusUpdate) -> bool:
        """Apply a delivery status callback. Returns True if a message changed."""
        return self.persistence.update_status(update.provider_message_id, update.status)

    def _ingest(
        self,
        message: CanonicalMessage,
        contact_name: str | None,
        raw_payload: dict[str, Any] | None,
    ) -> IngestResult:
        pid = message.provider_message_id
        with bind_message_context(
            message_id=message_id_prefix(pid),
            address_hash=hash_identifier(message.address),
            direction=message.direction,
        ):
            return self._ingest_bound(message, contact_name, raw_payload)

    def _ingest_bound(
        self,
        message: CanonicalMessage,
        contact_name: str | None,
        raw_payload: dict[str, Any] | None,
    ) -> IngestResult:
        pid = message.provider_message_id
        log_ctx = safe_log_context(kind=message.kind.value)

        with self._in_flight.hold(pid) if pid else nullcontext():
            if pid:
                existing = self.persistence.find_existing(message.address, pid)
                if existing is not None:
                    logger.info("duplicate message ignored", extra={"extra_fields": log_ctx})
                    return IngestResult(stored=existing)

            resolution = resolve_identity(
                self.persistence.primary,
                message.address,
                contact_name,
                message.timestamp,
            )
            message = replace(
                message.bound_to(resolution.identity, resolution.conversation),
                contact_name=resolution.identity.name,
            )

            if self.media is not None and self.media.needs_acquisition(message):
                message = self.media.acquire(message)

            stored = self.persistence.persist(message)

        if stored.duplicate:
            logger.info("duplicate message ignored at insert", extra={"extra_fields": log_ctx})
            return IngestResult(stored=stored)

        logger.info(
            "message stored",
            extra={"extra_fields": safe_log_context(**log_ctx, store=stored.store)},
        )
        return IngestResult(stored=stored, dispatch=self.dispatcher.dispatch(stored, raw_payload))
