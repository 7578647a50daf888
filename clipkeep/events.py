"""
Typed event channel from the pipeline to its subscribers.

Each subscriber gets its own bounded buffer. Publishing never blocks: when
a subscriber's buffer is full the oldest event is dropped, so a slow
consumer loses history rather than stalling capture.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional, Union

from .types import CapturedItem, SearchMatch

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256


@dataclass(frozen=True)
class ItemCaptured:
    """A new item was stored and classified."""
    item: CapturedItem


@dataclass(frozen=True)
class ItemIndexed:
    """An item's embedding is in the similarity index."""
    item_id: str
    collection_id: Optional[str] = None


@dataclass(frozen=True)
class SearchCompleted:
    query: str
    matches: tuple[SearchMatch, ...]


Event = Union[ItemCaptured, ItemIndexed, SearchCompleted]


class Subscription:
    """One subscriber's view of the channel."""

    def __init__(self, channel: "EventChannel", maxsize: int):
        self._channel = channel
        self._buffer: deque = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self.dropped = 0
        self.closed = False

    def _offer(self, event: Event) -> None:
        with self._cond:
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, waiting up to ``timeout`` seconds. None on timeout or close."""
        with self._cond:
            if not self._buffer and not self.closed:
                self._cond.wait(timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[Event]:
        """All buffered events, oldest first, without waiting."""
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()
        self._channel._unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class EventChannel:
    """Fan-out channel with per-subscriber drop-oldest buffers."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {buffer_size}")
        self._buffer_size = buffer_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, buffer_size: Optional[int] = None) -> Subscription:
        sub = Subscription(self, buffer_size or self._buffer_size)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._offer(event)
        logger.debug("Published %s to %d subscribers", type(event).__name__, len(subscribers))

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub.close()
