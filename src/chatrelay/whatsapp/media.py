"""Media acquisition via the Meta Graph API.

Two calls per attachment, each with its own timeout:
1. GET /{version}/{media_id} exchanges the handle for a short-lived URL.
2. GET <url> streams the bytes (bearer auth required) into a BlobSink.

Any failure leaves the MediaReference unresolved. Nothing is retried and
nothing propagates: the message is persisted and forwarded either way.

Security: NEVER log the media URL (it is a bearer-authorized link) or the
sender phone. Only log hashes and sizes.
"""

from dataclasses import replace
from typing import Any

import requests

from chatrelay.infra.blob_sink import BlobSink
from chatrelay.infra.settings import PipelineSettings
from chatrelay.messages.classifier import describe_media
from chatrelay.messages.models import (
    BINARY_KINDS,
    AcquisitionStatus,
    CanonicalMessage,
    MediaReference,
    MessageKind,
)
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, message_id_prefix, safe_log_context

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"

CHUNK_SIZE = 64 * 1024


class MediaResolutionError(Exception):
    """Raised when the Graph API response does not contain a fetch URL."""

    pass


class MediaAcquirer:
    """Resolves provider media handles and stores the bytes."""

    def __init__(
        self,
        sink: BlobSink,
        *,
        access_token: str | None,
        api_version: str = "v18.0",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        base_url: str = GRAPH_BASE_URL,
    ) -> None:
        self._sink = sink
        self._access_token = access_token
        self._api_version = api_version
        self._timeout = timeout
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: PipelineSettings, sink: BlobSink) -> "MediaAcquirer":
        return cls(
            sink,
            access_token=settings.meta_access_token,
            api_version=settings.graph_api_version,
            timeout=settings.media_timeout,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._access_token)

    def needs_acquisition(self, message: CanonicalMessage) -> bool:
        media = message.media
        return (
            media is not None
            and message.kind in BINARY_KINDS
            and media.status is AcquisitionStatus.PENDING
            and bool(media.provider_handle)
        )

    def acquire(self, message: CanonicalMessage) -> CanonicalMessage:
        """Return the message with its media resolved, or marked unresolved."""
        media = message.media
        if media is None or not self.needs_acquisition(message):
            return message

        log_ctx = safe_log_context(
            message_id=message_id_prefix(message.provider_message_id),
            handle_hash=hash_identifier(media.provider_handle or ""),
            kind=media.kind,
        )

        if not self.enabled:
            logger.info(
                "media acquisition disabled, leaving reference unresolved",
                extra={"extra_fields": log_ctx},
            )
            return message.with_media(replace(media, status=AcquisitionStatus.UNRESOLVED))

        try:
            info = self._resolve_handle(media.provider_handle or "")
            url, written, content_type = self._download(info, media)
        except Exception as e:
            logger.warning(
                "media acquisition failed",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, error_type=type(e).__name__
                    )
                },
            )
            return message.with_media(replace(media, status=AcquisitionStatus.UNRESOLVED))

        resolved = replace(
            media,
            url=url,
            file_size=written,
            mime_type=content_type or media.mime_type,
            status=AcquisitionStatus.RESOLVED,
        )
        logger.info(
            "media acquired",
            extra={"extra_fields": safe_log_context(**log_ctx, size=written)},
        )
        return message.with_media(resolved, content=_refreshed_content(message, resolved))

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def _resolve_handle(self, handle: str) -> dict[str, Any]:
        resp = self._session.get(
            f"{self._base_url}/{self._api_version}/{handle}",
            headers=self._headers(),
            timeout=self._timeout,
        )
        resp.raise_for_status()
        info = resp.json()
        if not isinstance(info, dict) or not info.get("url"):
            raise MediaResolutionError("media metadata has no url")
        return info

    def _download(self, info: dict[str, Any], media: MediaReference) -> tuple[str, int, str | None]:
        with self._session.get(
            info["url"],
            headers=self._headers(),
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            content_type = resp.headers.get("Content-Type") or info.get("mime_type")
            if content_type:
                content_type = content_type.split(";")[0].strip()
            url, written = self._sink.store(
                resp.iter_content(chunk_size=CHUNK_SIZE),
                kind=media.kind,
                mime_type=content_type or media.mime_type,
            )
        return url, written, content_type


def _refreshed_content(message: CanonicalMessage, media: MediaReference) -> str:
    try:
        kind = MessageKind(media.kind)
    except ValueError:
        return message.content
    return describe_media(
        kind,
        mime_type=media.mime_type,
        file_size=media.file_size,
        caption=media.caption,
        filename=media.filename,
    )
