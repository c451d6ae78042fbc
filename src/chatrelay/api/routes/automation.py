"""Automation (n8n) inbound route - messages sent on our behalf."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict

from chatrelay.api.deps import get_pipeline
from chatrelay.domain.persistence import PipelineInvariantError
from chatrelay.domain.pipeline import MessagePipeline
from chatrelay.infra.time import parse_iso_timestamp, utc_now
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context
from chatrelay.storage.base import PersistenceError

router = APIRouter(prefix="/api/n8n", tags=["automation"])

logger = get_logger(__name__)


class OutgoingMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    to: str | None = None
    message: str | None = None
    messageId: str | None = None
    contactName: str | None = None
    timestamp: datetime | str | None = None
    mediaUrl: str | None = None


@router.post("/messages")
def receive_automation_message(
    body: OutgoingMessageRequest,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> dict:
    """Store an outgoing message reported by the automation system."""
    if not body.to or not body.message:
        raise HTTPException(status_code=400, detail="Missing required fields: to and message")

    timestamp = parse_iso_timestamp(body.timestamp) if body.timestamp else utc_now()

    try:
        result = pipeline.ingest_outgoing(
            body.to,
            body.message,
            message_id=body.messageId,
            contact_name=body.contactName,
            timestamp=timestamp,
            media_url=body.mediaUrl,
        )
    except (PipelineInvariantError, PersistenceError):
        logger.exception(
            "automation message ingestion failed",
            extra={"extra_fields": safe_log_context(to_hash=hash_identifier(body.to))},
        )
        raise HTTPException(status_code=500, detail="message could not be stored")

    stored = result.stored
    return {
        "success": True,
        "messageId": stored.provider_message_id,
        "databaseId": stored.id,
        "store": stored.store,
        "duplicate": result.duplicate,
        "timestamp": utc_now().isoformat(),
    }
