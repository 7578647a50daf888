"""
Pending index work, processed serially off the capture path.

Captured items are queued here for embedding, indexing and collection
suggestion. A single daemon worker drains the queue, so slow embedding
never delays the next clipboard poll and model work is never run
concurrently.

Transient failures are retried with exponential backoff (0.5s, 1s, ...).
Items that exhaust MAX_ATTEMPTS, or fail permanently, are moved to a
failed list (dead letter) with their error rather than dropped silently.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from collections import deque
from dataclasses import dataclass
from typing import Optional

from .types import utc_now

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

# Oldest failed items are discarded beyond this many
MAX_FAILED = 1000

# Retry backoff: BASE * 2^(attempts-1) seconds
RETRY_BACKOFF_BASE = 0.5

_STOP = object()


@dataclass
class PendingIndex:
    """A queued indexing job."""
    id: str
    text: str
    timestamp: Optional[str] = None
    queued_at: str = ""
    attempts: int = 0
    last_error: Optional[str] = None


class PendingIndexQueue:
    """
    In-process queue with a single worker thread.

    Args:
        handler: Called with each PendingIndex. Exceptions with a true
            ``retryable`` attribute are retried; any other exception
            fails the item immediately.
        max_attempts: Total attempts per item
        backoff_base: First retry delay in seconds
        max_failed: Failed items kept for ``retry_failed``; oldest dropped first
        sleep: Injectable for tests
    """

    def __init__(
        self,
        handler: Callable[[PendingIndex], None],
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = RETRY_BACKOFF_BASE,
        max_failed: int = MAX_FAILED,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._handler = handler
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._failed: deque[PendingIndex] = deque(maxlen=max_failed)
        self._processed = 0
        self._retried = 0

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def enqueue(self, id: str, text: str, *, timestamp: Optional[str] = None) -> None:
        self._queue.put(PendingIndex(id=id, text=text, timestamp=timestamp, queued_at=utc_now()))

    def count(self) -> int:
        """Items waiting (not counting one being processed)."""
        return self._queue.qsize()

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread. Idempotent."""
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(
                target=self._run, name="clipkeep-index", daemon=True,
            )
            self._thread.start()
        logger.debug("Index worker started")

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop the worker.

        With ``drain`` (the default) the worker finishes everything queued
        before exiting; otherwise queued items are discarded.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            if not drain:
                self._discard_pending()
            self._queue.put(_STOP)
        thread.join(timeout)
        with self._lock:
            if self._thread is thread and not thread.is_alive():
                self._thread = None
        logger.debug("Index worker stopped")

    def join(self) -> None:
        """Block until every queued item has been processed."""
        self._queue.join()

    def _discard_pending(self) -> None:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.info("Discarded %d pending index items", dropped)

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is _STOP:
                    return
                self._process(task)
            finally:
                self._queue.task_done()

    def process_pending(self) -> int:
        """
        Process everything queued in the calling thread.

        For use without a running worker (CLI one-shots, tests).
        Returns the number of items handled.
        """
        handled = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                return handled
            try:
                if task is not _STOP:
                    self._process(task)
                    handled += 1
            finally:
                self._queue.task_done()

    def _process(self, task: PendingIndex) -> None:
        while True:
            task.attempts += 1
            try:
                self._handler(task)
            except Exception as e:
                task.last_error = f"{type(e).__name__}: {e}"
                if getattr(e, "retryable", False) and task.attempts < self._max_attempts:
                    delay = self._backoff_base * (2 ** (task.attempts - 1))
                    logger.info(
                        "Indexing %s failed (attempt %d), retry in %.1fs: %s",
                        task.id, task.attempts, delay, task.last_error,
                    )
                    with self._lock:
                        self._retried += 1
                    self._sleep(delay)
                    continue
                logger.warning("Abandoned indexing %s: %s", task.id, task.last_error)
                with self._lock:
                    if len(self._failed) == self._failed.maxlen:
                        logger.debug("Failed list full, discarding %s", self._failed[0].id)
                    self._failed.append(task)
                return
            with self._lock:
                self._processed += 1
            return

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def list_failed(self) -> list[PendingIndex]:
        with self._lock:
            return list(self._failed)

    def retry_failed(self) -> int:
        """Requeue failed items with a fresh attempt count."""
        with self._lock:
            failed = list(self._failed)
            self._failed.clear()
        for task in failed:
            self.enqueue(task.id, task.text, timestamp=task.timestamp)
        return len(failed)

    def stats(self) -> dict:
        with self._lock:
            return {
                "pending": self._queue.qsize(),
                "processed": self._processed,
                "retried": self._retried,
                "failed": len(self._failed),
            }
