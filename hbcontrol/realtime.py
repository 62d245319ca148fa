import asyncio
from typing import Any, AsyncIterator, Dict

class Broadcaster:
    """Fan-out of bridge events (entity writes, refreshes, job runs, notices) to SSE listeners."""

    def __init__(self, max_queue: int = 256):
        self._queues: set = set()
        self._max_queue = max_queue

    @property
    def listeners(self) -> int:
        return len(self._queues)

    async def register(self) -> AsyncIterator[Dict[str, Any]]:
        q: asyncio.Queue = asyncio.Queue(self._max_queue)
        self._queues.add(q)
        try:
            while True:
                yield await q.get()
        finally:
            self._queues.discard(q)

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        msg = {"event": event, "data": data}
        for q in list(self._queues):
            if q.full():
                # slow listener: drop its oldest event
                q.get_nowait()
            q.put_nowait(msg)
