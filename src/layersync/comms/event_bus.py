"""EventBus — asyncio pub/sub between the engine and its renderers.

The engine publishes state changes (layer loaded/removed, loading flags,
errors, temporal controller transitions); renderers and the WebSocket bridge
subscribe and drain their own queue. Publishing never suspends, so it is safe
inside the synchronous portion of any engine task.
"""

from __future__ import annotations

import asyncio


class EventBus:
    """Simple pub/sub for pushing events to subscribers on one event loop."""

    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue] = []

    def subscribe(self, _filter: str | None = None) -> asyncio.Queue:
        """Subscribe to events. Returns a Queue that receives all events.

        The optional ``_filter`` parameter is accepted for API compatibility
        but is currently ignored; the caller filters events itself.
        """
        q: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, data: dict | None = None) -> None:
        msg = {"type": event_type}
        if data is not None:
            msg["data"] = data
        for q in list(self._subscribers):
            try:
                q.put_nowait(msg)
            except asyncio.QueueFull:
                # Drop oldest message so the latest state always gets through
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                try:
                    q.put_nowait(msg)
                except asyncio.QueueFull:
                    pass
