"""
Polling watcher for the external text buffer (the clipboard).

One poller thread checks the buffer's change counter every ``interval``
seconds and emits a CaptureEvent to the registered handlers for each new
piece of text. Ticks never overlap, so watermark updates are strictly
sequential.
"""

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Optional

from .config import MAX_POLLING_INTERVAL, MIN_POLLING_INTERVAL
from .hashing import fingerprint
from .providers.base import BufferSource
from .types import MAX_CONTENT_SIZE, CaptureEvent, content_size, utc_now

logger = logging.getLogger(__name__)

CaptureHandler = Callable[[CaptureEvent], object]


class WatcherState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def validate_interval(interval: float) -> float:
    if not MIN_POLLING_INTERVAL <= interval <= MAX_POLLING_INTERVAL:
        raise ValueError(
            f"Polling interval must be in [{MIN_POLLING_INTERVAL}, {MAX_POLLING_INTERVAL}] "
            f"seconds, got {interval}"
        )
    return interval


class BufferWatcher:
    """
    Detects changes in a BufferSource and emits capture events.

    Args:
        buffer: The buffer to poll
        interval: Seconds between ticks, in [0.1, 5.0]
        suppress_duplicates: Skip text identical to the last accepted text
        max_size: Largest accepted text in UTF-8 bytes
    """

    def __init__(
        self,
        buffer: BufferSource,
        *,
        interval: float = 0.5,
        suppress_duplicates: bool = True,
        max_size: int = MAX_CONTENT_SIZE,
    ):
        self._buffer = buffer
        self._interval = validate_interval(interval)
        self.suppress_duplicates = suppress_duplicates
        self._max_size = max_size
        self._handlers: list[CaptureHandler] = []

        self._state = WatcherState.STOPPED
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._last_change: Optional[int] = None
        self._last_fingerprint: Optional[str] = None

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        # Takes effect from the next tick
        self._interval = validate_interval(value)

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is WatcherState.RUNNING

    @property
    def last_fingerprint(self) -> Optional[str]:
        return self._last_fingerprint

    def add_handler(self, handler: CaptureHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: CaptureHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Begin polling. Idempotent.

        Text already in the buffer when polling starts is not captured.
        """
        with self._state_lock:
            if self._state is WatcherState.RUNNING:
                return
            try:
                self._last_change = self._buffer.change_count()
            except Exception as e:
                logger.warning("Could not read buffer change count: %s", e)
                self._last_change = None
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="clipkeep-watcher", daemon=True,
            )
            self._state = WatcherState.RUNNING
            self._thread.start()
        logger.info("Watching buffer every %.1fs", self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling. Idempotent. A tick in progress is allowed to finish."""
        with self._state_lock:
            if self._state is WatcherState.STOPPED:
                return
            self._state = WatcherState.STOPPED
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Stopped watching buffer")

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.poll()

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def poll(self) -> Optional[CaptureEvent]:
        """
        Run one tick.

        Returns:
            The emitted event, or None when nothing new was captured
        """
        with self._tick_lock:
            event = self._check()
        if event is not None:
            self._emit(event)
        return event

    def _check(self) -> Optional[CaptureEvent]:
        try:
            change = self._buffer.change_count()
        except Exception as e:
            logger.warning("Buffer change count unavailable: %s", e)
            return None
        if change == self._last_change:
            return None
        self._last_change = change

        try:
            text = self._buffer.read_text()
        except Exception as e:
            logger.warning("Buffer read failed: %s", e)
            return None
        if not text:
            logger.debug("Buffer changed without text content")
            return None

        size = content_size(text)
        if size > self._max_size:
            logger.warning(
                "Buffer content exceeds size limit (%d > %d bytes), skipped",
                size, self._max_size,
            )
            return None

        fp = fingerprint(text)
        if self.suppress_duplicates and fp == self._last_fingerprint:
            logger.debug("Buffer content unchanged, skipped")
            return None
        self._last_fingerprint = fp

        source_app = None
        source = getattr(self._buffer, "source_app", None)
        if callable(source):
            try:
                source_app = source()
            except Exception as e:
                logger.debug("Source app unavailable: %s", e)
        return CaptureEvent(text=text, source_app=source_app, timestamp=utc_now())

    def _emit(self, event: CaptureEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Capture handler failed")
