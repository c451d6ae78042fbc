"""In-process realtime broadcast hub.

Each dashboard connection subscribes and gets its own bounded queue.
Delivery is best-effort and at-most-once. An emit first offers the event to
every subscriber without blocking, so subscribers with room get it at once.
Full subscribers are then retried until one shared `put_timeout` deadline
and miss the event if still full. Emitting with no subscribers is not an
error.

Async consumers bind their event loop with `bind_loop` and await
`next_event`; the emitting thread wakes them through
`loop.call_soon_threadsafe`, so waiting never occupies a worker thread.
"""

import asyncio
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 256

# Pause between retries of full subscribers within the emit deadline
RETRY_INTERVAL = 0.01


@dataclass(frozen=True)
class RealtimeEvent:
    name: str
    payload: dict[str, Any]


class Broadcaster(Protocol):
    def emit(self, name: str, payload: dict[str, Any]) -> int:
        """Deliver event to current subscribers, return how many got it."""
        ...


class Subscription:
    """A subscriber's view of the hub."""

    def __init__(self, hub: "SubscriberHub", maxsize: int) -> None:
        self._hub = hub
        self._queue: queue.Queue[RealtimeEvent] = queue.Queue(maxsize=maxsize)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None
        self.dropped = 0
        self.closed = False

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Wake awaiters of `next_event` on loop when events arrive."""
        self._loop = loop
        self._ready = asyncio.Event()

    def try_offer(self, event: RealtimeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        self._notify()
        return True

    def _notify(self) -> None:
        if self._loop is None or self._ready is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._ready.set)
        except RuntimeError:
            # loop already closed; the connection is going away
            pass

    def get(self, timeout: float | None = None) -> RealtimeEvent | None:
        """Next event, or None if nothing arrived within timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    async def next_event(self, timeout: float) -> RealtimeEvent | None:
        """Await the next event on the bound loop, None after timeout."""
        if self._ready is None:
            raise RuntimeError("bind_loop() must be called before next_event()")
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            pass
        self._ready.clear()
        # an emit between the first check and clear() would be lost otherwise
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            pass
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True
        self._hub.unsubscribe(self)


class SubscriberHub:
    """Fan an event out to every live subscription."""

    def __init__(self, put_timeout: float = 2.0) -> None:
        self._put_timeout = put_timeout
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
        sub = Subscription(self, maxsize)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def emit(self, name: str, payload: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscriptions)

        event = RealtimeEvent(name=name, payload=payload)
        pending = [sub for sub in targets if not sub.try_offer(event)]
        delivered = len(targets) - len(pending)

        deadline = time.monotonic() + self._put_timeout
        while pending and time.monotonic() < deadline:
            time.sleep(min(RETRY_INTERVAL, max(deadline - time.monotonic(), 0)))
            still_full = []
            for sub in pending:
                if sub.closed:
                    continue
                if sub.try_offer(event):
                    delivered += 1
                else:
                    still_full.append(sub)
            pending = still_full

        for sub in pending:
            sub.dropped += 1

        if delivered < len(targets):
            logger.warning(
                "realtime event dropped for slow subscribers",
                extra={
                    "extra_fields": safe_log_context(
                        event=name, subscribers=len(targets), delivered=delivered
                    )
                },
            )
        return delivered
