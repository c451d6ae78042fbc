"""WhatsApp webhook route - Meta Cloud API integration.

IMPORTANT: Always return 200 to Meta, even on errors.
Meta retries on non-2xx responses; re-deliveries are absorbed by the
pipeline's provider-id idempotency, but there is no point inviting them.
"""

import os
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from chatrelay.api.deps import get_pipeline
from chatrelay.domain.pipeline import InvalidEventError, MessagePipeline
from chatrelay.observability.correlation import get_correlation_id
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import message_id_prefix, safe_log_context
from chatrelay.whatsapp.meta_adapter import extract_messages, extract_statuses, is_whatsapp_envelope

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)

ACK = "EVENT_RECEIVED"


def process_envelope(pipeline: MessagePipeline, payload: dict[str, Any]) -> dict[str, int]:
    """Ingest every message and apply every status update in the envelope.

    One failing message does not stop the rest of the batch.

    Returns:
        Counters: stored, duplicates, failed, statuses.
    """
    counters = {"stored": 0, "duplicates": 0, "failed": 0, "statuses": 0}

    for item in extract_messages(payload):
        message_id = item.message.get("id")
        try:
            result = pipeline.ingest_incoming(
                item.message,
                contact_name=item.profile_name,
                raw_payload=payload,
            )
        except InvalidEventError:
            counters["failed"] += 1
            logger.warning(
                "meta message without sender skipped",
                extra={"extra_fields": safe_log_context(message_id=message_id_prefix(message_id))},
            )
            continue
        except Exception:
            counters["failed"] += 1
            logger.exception(
                "meta message ingestion failed",
                extra={"extra_fields": safe_log_context(message_id=message_id_prefix(message_id))},
            )
            continue

        if result.duplicate:
            counters["duplicates"] += 1
        else:
            counters["stored"] += 1

    for update in extract_statuses(payload):
        try:
            if pipeline.apply_status(update):
                counters["statuses"] += 1
        except Exception:
            logger.exception(
                "meta status update failed",
                extra={
                    "extra_fields": safe_log_context(
                        message_id=message_id_prefix(update.provider_message_id),
                        status=update.status,
                    )
                },
            )

    return counters


@router.get("/meta")
async def meta_webhook_verify(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
) -> Response:
    """Subscription handshake Meta performs when the webhook is configured.

    Returns:
        200 echoing hub.challenge when the token matches META_VERIFY_TOKEN.
        400 if hub.mode or hub.verify_token is missing.
        403 otherwise, including when no token is configured.
    """
    if not hub_mode or not hub_verify_token:
        return Response(status_code=400, content="missing hub.mode or hub.verify_token")

    expected_token = os.environ.get("META_VERIFY_TOKEN", "")
    if expected_token and hub_mode == "subscribe" and hub_verify_token == expected_token:
        logger.info("meta webhook verified")
        return Response(status_code=200, content=hub_challenge or "")

    logger.warning(
        "meta webhook verification failed",
        extra={
            "extra_fields": safe_log_context(
                hub_mode=hub_mode,
                token_configured=bool(expected_token),
            )
        },
    )
    return Response(status_code=403, content="verification failed")


@router.post("/meta")
async def meta_webhook(
    request: Request,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> Response:
    """Receive Meta Cloud API webhook.

    Returns:
        200 always (Meta requirement).
    """
    correlation_id = get_correlation_id()

    try:
        payload = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=200, content="ok")

    if not is_whatsapp_envelope(payload):
        logger.debug(
            "non-whatsapp webhook ignored",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    object_type=payload.get("object") if isinstance(payload, dict) else None,
                )
            },
        )
        return Response(status_code=200, content="ok")

    counters = await run_in_threadpool(process_envelope, pipeline, payload)

    logger.info(
        "meta webhook processed",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, **counters)},
    )
    return Response(status_code=200, content=ACK)
