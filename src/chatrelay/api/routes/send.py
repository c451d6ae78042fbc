"""Dashboard send route - deliver via WhatsApp, then record as sent."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from chatrelay.api.deps import get_pipeline, get_sender
from chatrelay.domain.persistence import PipelineInvariantError
from chatrelay.domain.pipeline import MessagePipeline
from chatrelay.infra.time import utc_now
from chatrelay.observability.correlation import get_correlation_id
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context
from chatrelay.storage.base import PersistenceError
from chatrelay.whatsapp.meta_sender import MetaSender, SendError

router = APIRouter(prefix="/api", tags=["send"])

logger = get_logger(__name__)


class SendMessageRequest(BaseModel):
    to: str | None = None
    message: str | None = None


@router.post("/send")
async def send_message(
    body: SendMessageRequest,
    pipeline: MessagePipeline = Depends(get_pipeline),
    sender: MetaSender | None = Depends(get_sender),
) -> dict:
    """Send a text message and ingest it as an outgoing message.

    Returns:
        400 if to or message is missing.
        503 if no sender is configured.
        502 if the Graph API send fails.
        500 if the sent message could not be stored.
    """
    if not body.to or not body.message:
        raise HTTPException(status_code=400, detail="Missing to or message field")
    if sender is None:
        raise HTTPException(status_code=503, detail="sending is not configured")

    correlation_id = get_correlation_id()
    try:
        message_id = await run_in_threadpool(
            lambda: sender.send_text(
                to_phone=body.to, text=body.message, correlation_id=correlation_id
            )
        )
    except SendError:
        raise HTTPException(status_code=502, detail="whatsapp send failed")

    try:
        result = await run_in_threadpool(
            pipeline.ingest_outgoing, body.to, body.message, message_id=message_id
        )
    except (PipelineInvariantError, PersistenceError):
        logger.exception(
            "sent message could not be stored",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, to_hash=hash_identifier(body.to)
                )
            },
        )
        raise HTTPException(status_code=500, detail="message sent but not stored")

    stored = result.stored
    return {
        "success": True,
        "messageId": stored.provider_message_id,
        "databaseId": stored.id,
        "store": stored.store,
        "timestamp": utc_now().isoformat(),
    }
