import asyncio
import json
import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, Optional

from ...models import ProgressEvent

ProgressListener = Callable[[ProgressEvent], None]


class ProgressBroker:
    """
    Fan-out of flow progress events.

    Delivery is at most once per listener and there is no replay: a listener
    only sees events published after it subscribed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[int, ProgressListener] = {}
        self._next_token = 0
        self._last_event: Optional[ProgressEvent] = None

    def subscribe(self, listener: ProgressListener) -> int:
        with self._lock:
            self._next_token += 1
            token = self._next_token
            self._listeners[token] = listener
            return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
            self._last_event = event
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("Progress listener failed", exc_info=True)

    @property
    def last_event(self) -> Optional[ProgressEvent]:
        with self._lock:
            return self._last_event

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    async def stream(self, max_pending: int = 100) -> AsyncIterator[ProgressEvent]:
        """Yield events as they arrive; a slow consumer loses events instead of blocking the flow."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max_pending)

        def _enqueue(event: ProgressEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Progress subscriber queue full; dropping event")

        token = self.subscribe(_enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(token)


def format_sse_frame(event: str, payload: Dict[str, Any]) -> str:
    encoded = json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {encoded}\n\n"


progress_broker = ProgressBroker()

logger = logging.getLogger(__name__)
