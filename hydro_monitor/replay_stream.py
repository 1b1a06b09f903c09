"""
Broadcast streams that replay recent history to every new subscriber.

A subscriber attaching to a ``ReplayBroadcast`` first receives the buffered
items present at attach time, then every live item published afterwards.
Subscribers are independent: cancelling one never affects the others.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Generic, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """One subscriber's view of a broadcast: an async iterator over its own queue"""

    def __init__(self, owner: "ReplayBroadcast[T]"):
        self._owner = owner
        self._items: Deque[T] = deque()
        self._ready = asyncio.Event()
        self._done = False

    def _push(self, item: T):
        if not self._done:
            self._items.append(item)
            self._ready.set()

    def _finish(self):
        self._done = True
        self._ready.set()

    @property
    def closed(self) -> bool:
        return self._done

    def pending(self) -> int:
        """Number of items waiting to be read"""
        return len(self._items)

    def drain(self) -> List[T]:
        """Return every item currently queued without waiting"""
        items = list(self._items)
        self._items.clear()
        return items

    async def get(self, timeout: Optional[float] = None) -> T:
        """Wait for the next item; raises StopAsyncIteration once the stream has ended"""
        while not self._items:
            if self._done:
                raise StopAsyncIteration
            self._ready.clear()
            if timeout is None:
                await self._ready.wait()
            else:
                await asyncio.wait_for(self._ready.wait(), timeout)
        return self._items.popleft()

    def cancel(self):
        """Detach from the broadcast; queued items remain readable"""
        self._owner._remove(self)
        self._finish()

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        return await self.get()

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.cancel()


class ReplayBroadcast(Generic[T]):
    """Fan-out stream backed by a bounded replay buffer (capacity 0 disables replay)"""

    def __init__(self, capacity: int = 0, name: str = "stream"):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.name = name
        self.capacity = capacity
        self._buffer: Deque[T] = deque(maxlen=capacity)
        self._subscribers: Set[Subscription[T]] = set()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def latest(self) -> Optional[T]:
        return self._buffer[-1] if self._buffer else None

    def snapshot(self) -> List[T]:
        """Copy of the replay buffer, oldest first"""
        return list(self._buffer)

    def clear(self):
        self._buffer.clear()

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self)
        # Snapshot and registration happen with no await in between, so no
        # item can be missed or delivered twice.
        for item in self._buffer:
            subscription._push(item)
        if self._closed:
            subscription._finish()
        else:
            self._subscribers.add(subscription)
        return subscription

    def publish(self, item: T) -> bool:
        """Buffer and fan out an item; returns False if the stream is closed"""
        if self._closed:
            logger.debug(f"Dropping item published to closed {self.name} stream")
            return False
        if self.capacity:
            self._buffer.append(item)
        for subscription in list(self._subscribers):
            subscription._push(item)
        return True

    def close(self):
        """End every subscription; safe to call more than once"""
        if self._closed:
            return
        self._closed = True
        subscribers = list(self._subscribers)
        self._subscribers.clear()
        for subscription in subscribers:
            subscription._finish()
        logger.debug(f"Closed {self.name} stream ({len(subscribers)} subscribers)")

    def _remove(self, subscription: Subscription[T]):
        self._subscribers.discard(subscription)
