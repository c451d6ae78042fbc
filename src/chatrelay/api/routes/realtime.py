"""Realtime WebSocket endpoint bridging the subscriber hub to dashboards."""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context

router = APIRouter(tags=["realtime"])

logger = get_logger(__name__)

# Seconds between checks for a client disconnect while idle
POLL_INTERVAL = 0.5


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # client frames carry nothing we act on; read them only to see the close
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
    """Stream `{"event": name, "data": payload}` frames until the client leaves."""
    hub = websocket.app.state.pipeline.hub
    if hub is None:
        await websocket.close(code=1011)
        return

    # subscribe before accept so nothing emitted after the handshake is missed
    sub = hub.subscribe()
    sub.bind_loop(asyncio.get_running_loop())
    disconnected: asyncio.Task | None = None
    try:
        await websocket.accept()
        logger.info(
            "realtime subscriber connected",
            extra={"extra_fields": safe_log_context(subscribers=hub.subscriber_count)},
        )
        disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
        while not disconnected.done():
            event = await sub.next_event(POLL_INTERVAL)
            if event is None or disconnected.done():
                continue
            await websocket.send_json({"event": event.name, "data": event.payload})
    except WebSocketDisconnect:
        pass
    finally:
        if disconnected is not None and not disconnected.done():
            disconnected.cancel()
        sub.close()
        logger.info(
            "realtime subscriber disconnected",
            extra={
                "extra_fields": safe_log_context(
                    subscribers=hub.subscriber_count, dropped=sub.dropped
                )
            },
        )
