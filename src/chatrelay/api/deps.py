"""Request-scoped access to the objects built by the app factory."""

from fastapi import Request

from chatrelay.domain.pipeline import MessagePipeline
from chatrelay.whatsapp.meta_sender import MetaSender


def get_pipeline(request: Request) -> MessagePipeline:
    """FastAPI dependency returning the app's pipeline (overridable in tests)."""
    return request.app.state.pipeline


def get_sender(request: Request) -> MetaSender | None:
    """The app's Graph API sender, or None when sending is not configured."""
    return request.app.state.sender
