"""
Progress channel: an asyncio queue of ProgressEvent with an explicit end
"""
import asyncio
from typing import AsyncIterator

from ..schemas.upload import ProgressEvent

_CLOSED = object()


class ProgressChannel:
    """Single-producer, single-consumer event stream for one upload."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise RuntimeError(f"Progress channel for {event.session_id} is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
