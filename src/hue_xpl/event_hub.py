from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from hue_xpl.models import ChangeRecord


def _now_ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass(frozen=True)
class Subscription:
    queue: "asyncio.Queue[dict[str, Any]]"
    unsubscribe: Callable[[], Awaitable[None]]


class EventHub:
    """In-process fan-out of published change records (SSE feed)."""

    def __init__(self, *, max_queue_size: int = 200) -> None:
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self._max_queue_size = max_queue_size
        self._lock = asyncio.Lock()
        self.published = 0

    async def subscribe(self) -> Subscription:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        async with self._lock:
            self._subscribers.add(queue)

        async def _unsubscribe() -> None:
            async with self._lock:
                self._subscribers.discard(queue)

        return Subscription(queue=queue, unsubscribe=_unsubscribe)

    async def publish(self, record: ChangeRecord) -> None:
        event = {"ts": _now_ts(), "type": "state.changed", "data": record.as_event()}
        async with self._lock:
            self.published += 1
            subscribers = list(self._subscribers)
        for queue in subscribers:
            # Slow consumers lose their oldest event.
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                pass
