"""WhatsApp webhook envelope models."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class InboundItem:
    """One message from a webhook envelope, with the context Meta sends beside it.

    ATTENTION PII: `message` carries the sender phone and text. Keep it in
    memory for the pipeline only; never log it.
    """

    message: dict[str, Any]
    profile_name: str | None
    phone_number_id: str | None


@dataclass(frozen=True)
class StatusUpdate:
    """Delivery status callback for a message we sent."""

    provider_message_id: str
    status: str
    timestamp: datetime
    recipient: str | None
