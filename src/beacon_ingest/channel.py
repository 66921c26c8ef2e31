from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Generic, Optional, TypeVar

T = TypeVar("T")


class ChannelClosed(RuntimeError):
    """Raised when sending on a channel that has been closed."""


class Channel(Generic[T]):
    """Bounded FIFO between exactly one producer task and one consumer task.

    After ``close()`` the consumer still drains every item sent before it;
    ``receive`` then returns ``None``.
    """

    def __init__(self, maxsize: int, *, name: str = "channel") -> None:
        if maxsize <= 0:
            raise ValueError("Channel maxsize must be positive.")
        self.name = name
        self._maxsize = maxsize
        self._items: Deque[T] = deque()
        self._not_empty = asyncio.Event()
        self._not_full = asyncio.Event()
        self._not_full.set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return len(self._items)

    def full(self) -> bool:
        return len(self._items) >= self._maxsize

    async def send(self, item: T) -> None:
        while self.full() and not self._closed:
            self._not_full.clear()
            await self._not_full.wait()
        if self._closed:
            raise ChannelClosed(f"{self.name} is closed.")
        self._items.append(item)
        self._not_empty.set()

    def try_send(self, item: T) -> bool:
        if self._closed:
            raise ChannelClosed(f"{self.name} is closed.")
        if self.full():
            return False
        self._items.append(item)
        self._not_empty.set()
        return True

    async def receive(self, timeout: Optional[float] = None) -> Optional[T]:
        """Return the next item, or ``None`` once the channel is closed and drained.

        Raises ``asyncio.TimeoutError`` when ``timeout`` elapses first.
        """
        while not self._items:
            if self._closed:
                return None
            self._not_empty.clear()
            if timeout is None:
                await self._not_empty.wait()
            else:
                await asyncio.wait_for(self._not_empty.wait(), timeout=max(timeout, 0.0))
        item = self._items.popleft()
        self._not_full.set()
        return item

    def close(self) -> None:
        self._closed = True
        self._not_empty.set()
        self._not_full.set()
