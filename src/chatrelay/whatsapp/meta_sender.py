"""Outbound WhatsApp messaging via Meta Cloud API.

Security: NEVER log to_phone or text. Only log hashes and lengths.
"""

import os
import time
from typing import Any

import requests

from chatrelay.infra.settings import DEFAULT_GRAPH_API_VERSION
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

# Timeout for HTTP requests (seconds)
HTTP_TIMEOUT = 5

# Retry config
MAX_RETRIES = 1
RETRY_DELAY = 0.2


class SendError(Exception):
    """Raised when the Graph API refused or never answered a send."""

    pass


def _is_retryable(error: requests.RequestException) -> bool:
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    response = getattr(error, "response", None)
    return response is not None and 500 <= response.status_code < 600


class MetaSender:
    """Sends text messages through the Graph API messages endpoint."""

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        *,
        api_version: str = DEFAULT_GRAPH_API_VERSION,
        session: requests.Session | None = None,
    ) -> None:
        self._url = f"https://graph.facebook.com/{api_version}/{phone_number_id}/messages"
        self._access_token = access_token
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "MetaSender | None":
        """Build from META_PHONE_NUMBER_ID and META_ACCESS_TOKEN, or None if unset."""
        phone_number_id = os.environ.get("META_PHONE_NUMBER_ID", "")
        access_token = os.environ.get("META_ACCESS_TOKEN", "")
        if not phone_number_id or not access_token:
            return None
        return cls(
            phone_number_id,
            access_token,
            api_version=os.environ.get("META_GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION),
        )

    def send_text(
        self,
        *,
        to_phone: str,
        text: str,
        correlation_id: str | None = None,
    ) -> str | None:
        """Send a text message.

        Args:
            to_phone: Recipient phone number. NEVER logged.
            text: Message text. NEVER logged.
            correlation_id: Optional correlation ID for tracing.

        Returns:
            The provider message id (wamid) from the response, if any.

        Raises:
            SendError: On HTTP or network errors after retry.
        """
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        headers = {"Authorization": f"Bearer {self._access_token}"}

        log_ctx = safe_log_context(
            correlationId=correlation_id or "",
            to_hash=hash_identifier(to_phone),
            text_len=len(text),
            provider="meta",
        )
        logger.info("sending outbound message via meta", extra={"extra_fields": log_ctx})

        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = self._session.post(
                    self._url, json=payload, headers=headers, timeout=HTTP_TIMEOUT
                )
                resp.raise_for_status()
            except requests.RequestException as e:
                if attempt < MAX_RETRIES and _is_retryable(e):
                    logger.warning(
                        "outbound send via meta failed, retrying",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx, attempt=attempt, error_type=type(e).__name__
                            )
                        },
                    )
                    time.sleep(RETRY_DELAY)
                    continue

                logger.error(
                    "outbound send via meta failed",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, error_type=type(e).__name__
                        )
                    },
                )
                raise SendError(type(e).__name__) from e

            message_id = _extract_message_id(resp)
            logger.info(
                "outbound message sent via meta",
                extra={"extra_fields": safe_log_context(**log_ctx, attempt=attempt)},
            )
            return message_id

        return None


def _extract_message_id(resp: requests.Response) -> str | None:
    try:
        body: Any = resp.json()
    except ValueError:
        return None
    messages = body.get("messages") if isinstance(body, dict) else None
    if not messages or not isinstance(messages[0], dict):
        return None
    return messages[0].get("id")
