"""Dashboard read endpoints for conversations and their messages."""

from fastapi import APIRouter, Depends, Path, Query

from chatrelay.api.deps import get_pipeline
from chatrelay.domain.pipeline import MessagePipeline
from chatrelay.messages.models import StoredMessage

router = APIRouter(prefix="/api/chats", tags=["chats"])


def _message_to_dict(stored: StoredMessage) -> dict:
    message = stored.message
    data = {
        "id": stored.public_id,
        "text": message.content,
        "timestamp": message.timestamp.isoformat(),
        "type": message.direction,
        "from": message.address if message.direction == "received" else "me",
        "status": message.status,
        "messageType": message.preview_type,
    }
    if message.media is not None:
        media = message.media.to_dict()
        media.pop("raw_data", None)
        data["media"] = media
    return data


@router.get("")
def list_chats(
    limit: int = Query(100, ge=1, le=500),
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> list[dict]:
    """Conversations, most recently active first."""
    return [
        {
            "id": summary.chat_id,
            "number": summary.address,
            "name": summary.contact_name,
            "unread": summary.unread_count,
            "lastMessage": summary.last_message,
            "lastMessageAt": summary.last_message_at.isoformat() if summary.last_message_at else None,
            "totalMessages": summary.total_messages,
            "contactStatus": summary.contact_status,
        }
        for summary in pipeline.persistence.list_conversations(limit)
    ]


@router.get("/{address}/messages")
def list_chat_messages(
    address: str = Path(..., min_length=1),
    limit: int = Query(200, ge=1, le=1000),
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> list[dict]:
    """Messages of one conversation, oldest first. Marks the conversation read."""
    pipeline.persistence.mark_read(address)
    return [_message_to_dict(stored) for stored in pipeline.persistence.list_messages(address, limit)]
