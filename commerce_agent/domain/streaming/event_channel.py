from typing import Any, AsyncIterator
import asyncio


class ChannelClosed(Exception):
    """Send on a closed channel"""


_CLOSED = object()


class EventChannel:
    """Bounded single-consumer channel between a turn producer and the transport"""

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: Any) -> None:
        if self._closed:
            raise ChannelClosed("Event channel is closed")
        await self._queue.put(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    def abort(self) -> None:
        """Close without waiting; undelivered events are dropped"""

        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[Any]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event
