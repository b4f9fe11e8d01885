"""Unbounded output channel between a process reader and its consumers."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class OutputChannel(Generic[T]):
    """Single-producer, multi-consumer queue of framed output units.

    ``put`` never blocks. Iteration ends once the producer has called
    ``close`` and every queued unit has been taken; each consumer sees
    the close marker, so several consumers all terminate.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, item: T) -> None:
        if self._closed:
            raise RuntimeError("put() on a closed output channel")
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return
            yield item  # type: ignore[misc]
