"""Fan-out dispatcher - automation forward and realtime broadcast.

Runs after persistence commits. Two tasks per message, on separate pools
so a backlog of slow forwards cannot starve broadcasts:

- forward: POST the automation payload to the n8n webhook (own timeout)
- broadcast: wait for the forward outcome (bounded), then emit to
  dashboard subscribers with `n8nForwarded` folded in

Nothing here raises into the ingestion path and nothing is retried.
"""

import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any

import requests

from chatrelay.infra.time import utc_now
from chatrelay.messages.models import StoredMessage
from chatrelay.observability.correlation import submit_with_context
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, message_id_prefix, safe_log_context
from chatrelay.realtime.hub import Broadcaster
from chatrelay.storage.base import default_contact_name

logger = get_logger(__name__)

PLATFORM = "whatsapp"

EVENT_RECEIVED = "new_message"
EVENT_SENT = "message_sent"

# Extra time the broadcast task waits beyond the forward timeout
FORWARD_GRACE_SECONDS = 1.0


@dataclass(frozen=True)
class DispatchOutcome:
    event: str
    forwarded: bool
    delivered: int


def _source(stored: StoredMessage) -> str:
    return "incoming" if stored.message.direction == "received" else "outgoing"


def _media_info(stored: StoredMessage) -> dict[str, Any] | None:
    message = stored.message
    if message.media is not None:
        info = message.media.to_dict()
        # the echoed raw payload already travels as metaData
        info.pop("raw_data", None)
        return info
    return message.detail


def _contact_name(stored: StoredMessage) -> str:
    message = stored.message
    if message.identity is not None and message.identity.name:
        return message.identity.name
    return message.contact_name or default_contact_name(message.address)


def build_automation_payload(
    stored: StoredMessage,
    raw_payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Payload POSTed to the automation webhook."""
    message = stored.message
    payload: dict[str, Any] = {
        "from": message.address,
        "message": message.content,
        "timestamp": message.timestamp.isoformat(),
        "contactName": _contact_name(stored),
        "messageId": message.provider_message_id or f"msg-{int(time.time() * 1000)}",
        "source": _source(stored),
        "direction": _source(stored),
        "messageType": message.preview_type,
        "contactId": message.identity.id if message.identity else None,
        "chatId": message.conversation.id if message.conversation else None,
        "platform": PLATFORM,
        "serverTime": utc_now().isoformat(),
    }
    media_info = _media_info(stored)
    if media_info is not None:
        payload["mediaInfo"] = media_info
    if raw_payload is not None:
        payload["metaData"] = raw_payload
    return payload


def build_realtime_payload(stored: StoredMessage, forwarded: bool) -> dict[str, Any]:
    """Minimal payload a dashboard needs to render the message."""
    message = stored.message
    payload: dict[str, Any] = {
        "from": message.address,
        "message": message.content,
        "timestamp": message.timestamp.isoformat(),
        "contactName": _contact_name(stored),
        "messageId": stored.public_id,
        "messageType": message.preview_type,
        "source": _source(stored),
        "n8nForwarded": forwarded,
    }
    media_info = _media_info(stored)
    if media_info is not None:
        payload["mediaInfo"] = media_info
    return payload


def event_name(stored: StoredMessage) -> str:
    return EVENT_RECEIVED if stored.message.direction == "received" else EVENT_SENT


class AutomationForwarder:
    """POSTs automation payloads to the n8n webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 8.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def forward(self, payload: dict[str, Any]) -> bool:
        """Send payload. Returns True on 2xx, False on any failure."""
        log_ctx = safe_log_context(
            message_id=message_id_prefix(payload.get("messageId")),
            from_hash=hash_identifier(str(payload.get("from", ""))),
            source=payload.get("source"),
        )
        try:
            resp = self._session.post(
                self._url,
                json=payload,
                headers={
                    "X-Source": "chatrelay",
                    "X-Forwarded-Time": utc_now().isoformat(),
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning(
                "automation forward failed",
                extra={"extra_fields": safe_log_context(**log_ctx, error_type=type(e).__name__)},
            )
            return False

        logger.info(
            "automation forward succeeded",
            extra={"extra_fields": safe_log_context(**log_ctx, status=resp.status_code)},
        )
        return True


class FanoutDispatcher:
    """Dispatches stored messages to the forwarder and the broadcaster."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        forwarder: AutomationForwarder | None = None,
        *,
        max_workers: int = 8,
    ) -> None:
        self._broadcaster = broadcaster
        self._forwarder = forwarder
        self._forward_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fanout-forward")
        self._broadcast_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fanout-broadcast")

    @property
    def forward_timeout(self) -> float:
        return self._forwarder.timeout if self._forwarder is not None else 0.0

    def dispatch(
        self,
        stored: StoredMessage,
        raw_payload: dict[str, Any] | None = None,
    ) -> Future | None:
        """Start both dispatches and return the broadcast task's future.

        Callers in the request path do not wait on the future; tests do.
        """
        try:
            automation_payload = build_automation_payload(stored, raw_payload)
            forward_future = submit_with_context(self._forward_pool, self._forward, automation_payload)
            return submit_with_context(self._broadcast_pool, self._broadcast, stored, forward_future)
        except RuntimeError:
            # pools already shut down (process exiting)
            logger.warning(
                "fan-out skipped, dispatcher is shut down",
                extra={"extra_fields": safe_log_context(message_id=message_id_prefix(stored.provider_message_id))},
            )
            return None

    def _forward(self, payload: dict[str, Any]) -> bool:
        if self._forwarder is None:
            return False
        try:
            return self._forwarder.forward(payload)
        except Exception:
            logger.exception("automation forwarder raised")
            return False

    def _broadcast(self, stored: StoredMessage, forward_future: Future) -> DispatchOutcome:
        name = event_name(stored)
        try:
            forwarded = bool(forward_future.result(timeout=self.forward_timeout + FORWARD_GRACE_SECONDS))
        except FutureTimeout:
            logger.warning(
                "automation forward timed out, broadcasting without it",
                extra={"extra_fields": safe_log_context(message_id=message_id_prefix(stored.provider_message_id))},
            )
            forwarded = False
        except Exception:
            forwarded = False

        payload = build_realtime_payload(stored, forwarded)
        try:
            delivered = self._broadcaster.emit(name, payload)
        except Exception:
            logger.exception("realtime broadcast failed")
            delivered = 0
        return DispatchOutcome(event=name, forwarded=forwarded, delivered=delivered)

    def shutdown(self, wait: bool = True) -> None:
        self._forward_pool.shutdown(wait=wait, cancel_futures=not wait)
        self._broadcast_pool.shutdown(wait=wait, cancel_futures=not wait)
