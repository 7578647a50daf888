"""
Core API for clipkeep.

ClipKeeper owns the capture pipeline: clipboard watcher, classifier,
similarity index, grouping advisor, rate limiter, background index worker
and event channel, over a durable item store.

Capture path (synchronous, serialized):
    validate -> dedup -> rate limit -> persist (with retries) -> classify
    -> publish ItemCaptured -> queue for indexing

Index path (background worker):
    embed + index -> cache vector in store -> suggest collection
    -> publish ItemIndexed

Nothing on either path raises to the caller: capture returns a
CaptureOutcome and the worker logs and dead-letters failures.
"""

import logging
import re
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Optional

from .classifier import Classifier
from .clip_store import ClipStore
from .config import ClipConfig, get_store_path, load_or_create_config
from .errors import (
    CaptureOutcome,
    CaptureStatus,
    DuplicateError,
    SaveFailedError,
    SearchError,
    StoreError,
    ValidationError,
)
from .events import EventChannel, ItemCaptured, ItemIndexed, SearchCompleted
from .grouping import GroupingAdvisor
from .hashing import fingerprint
from .index import BatchResult, SimilarityIndex
from .pending import PendingIndex, PendingIndexQueue
from .protocol import ClipStoreProtocol
from .providers.base import BufferSource, EmbeddingProvider, get_registry
from .providers.embeddings import CachingEmbeddingProvider
from .ratelimit import RollingRateLimiter
from .types import (
    MAX_CONTENT_SIZE,
    CaptureEvent,
    CapturedItem,
    Category,
    Collection,
    SearchMatch,
    Tag,
    content_size,
    derive_title,
)
from .watcher import BufferWatcher

logger = logging.getLogger(__name__)

# Delay before each save retry: one immediate retry, then exponential backoff
SAVE_RETRY_DELAYS = (0.0, 0.1, 0.2, 0.4)


# -------------------------------------------------------------------------
# Search highlights
# -------------------------------------------------------------------------

MAX_HIGHLIGHTS = 3
MAX_HIGHLIGHT_LENGTH = 150
_SENTENCE_SPLIT = re.compile(r"[.!?]")


def extract_highlights(content: str, query: str) -> tuple[str, ...]:
    """
    Sentences of ``content`` that contain any word of ``query``.

    Sentences of 10 characters or fewer are ignored; each highlight is cut
    to 150 characters and at most three are returned, in document order.
    """
    words = [w for w in query.lower().split() if w]
    if not words:
        return ()
    highlights = []
    for sentence in _SENTENCE_SPLIT.split(content):
        trimmed = sentence.strip()
        if len(trimmed) <= 10:
            continue
        lowered = trimmed.lower()
        if any(w in lowered for w in words):
            highlights.append(trimmed[:MAX_HIGHLIGHT_LENGTH])
            if len(highlights) >= MAX_HIGHLIGHTS:
                break
    return tuple(highlights)


class ClipKeeper:
    """
    Clipboard keeper: capture, classify, index and search snippets.

    Example:
        with ClipKeeper() as ck:
            ck.capture_text("Meeting notes about database migration")
            ck.process_pending()
            for match in ck.search("schema change discussion"):
                print(match.score, match.item.title)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[ClipConfig] = None,
        store: Optional[ClipStoreProtocol] = None,
        buffer: Optional[BufferSource] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        classifier: Optional[Classifier] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to CLIPKEEP_STORE_PATH or ~/.clipkeep
            config: Pre-loaded config (skips filesystem config discovery)
            store: Injected item store (skips SQLite store creation)
            buffer: Injected buffer source (default: the system clipboard)
            embedding_provider: Injected provider (skips registry lookup)
            classifier: Injected classifier
            clock: Monotonic clock for rate limiting
            sleep: Sleep function for retry backoff
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_store_path()
            self._config = load_or_create_config(path)
        self._config.validate()
        self._store_path = self._config.path

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._store: ClipStoreProtocol = store if store is not None else ClipStore(self._config.db_path)
        self._buffer = buffer
        self._sleep = sleep

        if embedding_provider is None:
            embedding_provider = self._create_embedding_provider()
        self._embedding_provider = embedding_provider
        self._index = SimilarityIndex(
            self._embedding_provider, batch_size=self._config.index_batch_size,
        )
        self._classifier = classifier or Classifier()
        self._advisor = GroupingAdvisor()
        self._limiter = RollingRateLimiter(
            self._config.rate_limit, self._config.rate_window, clock=clock,
        )
        self._events = EventChannel()
        self._pending = PendingIndexQueue(self._index_item, sleep=sleep)

        self._watcher: Optional[BufferWatcher] = None
        self._capture_lock = threading.Lock()
        self._backfill_thread: Optional[threading.Thread] = None

    def _create_embedding_provider(self) -> EmbeddingProvider:
        """Provider named in config, behind an in-memory cache."""
        registry = get_registry()
        base = registry.create_embedding(
            self._config.embedding.name,
            self._config.embedding.params,
        )
        return CachingEmbeddingProvider(base)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ClipConfig:
        return self._config

    @property
    def store(self) -> ClipStoreProtocol:
        return self._store

    @property
    def index(self) -> SimilarityIndex:
        return self._index

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def pending(self) -> PendingIndexQueue:
        return self._pending

    @property
    def embedding_provider(self) -> EmbeddingProvider:
        return self._embedding_provider

    @property
    def watcher(self) -> BufferWatcher:
        """The clipboard watcher, created on first use."""
        if self._watcher is None:
            if self._buffer is None:
                self._buffer = get_registry().create_buffer("system")
            self._watcher = BufferWatcher(
                self._buffer,
                interval=self._config.polling_interval,
                suppress_duplicates=not self._config.allow_duplicates,
            )
            self._watcher.add_handler(self.handle_event)
        return self._watcher

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def capture_text(self, text: str, source_app: Optional[str] = None) -> CaptureOutcome:
        """Run text through the capture pipeline as if it had been copied."""
        return self.handle_event(CaptureEvent(text=text, source_app=source_app))

    def handle_event(self, event: CaptureEvent) -> CaptureOutcome:
        """
        Process one capture event.

        Never raises; every failure is reported as a CaptureOutcome.
        """
        with self._capture_lock:
            try:
                return self._handle(event)
            except Exception as e:
                logger.exception("Capture failed unexpectedly")
                return CaptureOutcome(CaptureStatus.SAVE_FAILED, reason=str(e))

    def _handle(self, event: CaptureEvent) -> CaptureOutcome:
        text = event.text or ""
        title = derive_title(text)

        # Validate
        if not text.strip() or not title:
            logger.warning("Rejected capture: empty content")
            return CaptureOutcome(CaptureStatus.VALIDATION_FAILED, reason="empty content")
        size = content_size(text)
        if size > MAX_CONTENT_SIZE:
            logger.warning(
                "Rejected capture: %d bytes exceeds limit of %d", size, MAX_CONTENT_SIZE,
            )
            return CaptureOutcome(
                CaptureStatus.VALIDATION_FAILED,
                reason=f"content is {size} bytes, limit is {MAX_CONTENT_SIZE}",
            )

        # Deduplicate
        if not self._config.allow_duplicates:
            try:
                existing = self._store.find_by_fingerprint(fingerprint(text))
            except StoreError as e:
                # The store repeats the check on create
                logger.debug("Duplicate lookup failed: %s", e)
                existing = None
            if existing is not None:
                logger.debug("Duplicate of %s, skipped", existing.id)
                return CaptureOutcome(CaptureStatus.DUPLICATE, item=existing, reason="duplicate")

        # Rate limit
        if not self._limiter.try_acquire():
            logger.warning(
                "Capture rate limit reached (%d per %.0fs), dropped",
                self._limiter.limit, self._limiter.window,
            )
            return CaptureOutcome(CaptureStatus.RATE_LIMITED, reason="rate limit exceeded")

        # Persist
        item = CapturedItem.create(
            text, title=title, source_app=event.source_app, created_at=event.timestamp,
        )
        try:
            item = self._save_with_retry(item)
        except DuplicateError as e:
            return CaptureOutcome(CaptureStatus.DUPLICATE, reason=str(e))
        except ValidationError as e:
            logger.warning("Rejected capture: %s", e)
            return CaptureOutcome(CaptureStatus.VALIDATION_FAILED, reason=str(e))
        except StoreError as e:
            logger.warning("Capture not saved: %s", e)
            return CaptureOutcome(CaptureStatus.SAVE_FAILED, reason=str(e))

        # Classify
        if self._config.auto_categorize:
            result = self._classifier.classify(text, event.source_app)
            try:
                item = self._store.set_classification(item.id, result.category, result.tags)
            except StoreError as e:
                logger.warning("Could not save classification for %s: %s", item.id, e)

        logger.info("Captured %s", item)
        self._events.publish(ItemCaptured(item))

        if self._config.semantic_search:
            self._pending.enqueue(item.id, item.content, timestamp=item.created_at)

        return CaptureOutcome(CaptureStatus.ACCEPTED, item=item)

    def _save_with_retry(self, item: CapturedItem) -> CapturedItem:
        """
        Create ``item``, retrying retryable store failures.

        Raises:
            StoreError: Non-retryable failure, or SaveFailedError once
                ``save_attempts`` are exhausted
        """
        attempts = self._config.save_attempts
        last_error: Optional[StoreError] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay = SAVE_RETRY_DELAYS[min(attempt - 2, len(SAVE_RETRY_DELAYS) - 1)]
                if delay:
                    self._sleep(delay)
            try:
                return self._store.create(item, allow_duplicates=self._config.allow_duplicates)
            except StoreError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.info("Save attempt %d/%d failed: %s", attempt, attempts, e)
        raise SaveFailedError(
            f"Save failed after {attempts} attempts: {last_error}"
        ) from last_error

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    def _index_item(self, task: PendingIndex) -> None:
        """Worker handler: embed, cache, group and announce one item."""
        item = self._store.get(task.id)
        if item is None:
            logger.debug("Item %s deleted before indexing", task.id)
            return

        changed = self._index.upsert(item.id, item.content, timestamp=item.created_at)
        vector = self._index.vector(item.id)
        if changed and vector is not None:
            try:
                self._store.set_embedding(
                    item.id, vector, self._embedding_provider.name, item.fingerprint,
                )
            except StoreError as e:
                logger.warning("Could not cache embedding for %s: %s", item.id, e)

        collection_id = item.collection_id
        if collection_id is None:
            suggestion = self._advisor.suggest_for_item(item.id, self._index, self._store)
            if suggestion is not None:
                try:
                    self._store.set_collection(item.id, suggestion)
                    collection_id = suggestion
                    logger.info("Grouped %s into collection %s", item.id, suggestion)
                except StoreError as e:
                    logger.warning("Could not assign %s to %s: %s", item.id, suggestion, e)

        self._events.publish(ItemIndexed(item.id, collection_id))

    def process_pending(self) -> int:
        """Index everything queued, in the calling thread. Returns items handled."""
        return self._pending.process_pending()

    def backfill(self) -> BatchResult:
        """
        Bring the similarity index up to date with the store.

        Vectors cached in the store by the current model are restored
        without embedding; the rest are embedded in batches of
        ``index_batch_size``. Restored and already-indexed items are
        reported as skipped.
        """
        model = self._embedding_provider.name
        cached = self._store.cached_embeddings(model)
        result = BatchResult()
        to_embed: list[tuple[str, str, str]] = []
        fingerprints: dict[str, str] = {}

        for item in self._store.list_items():
            if self._index.fingerprint_of(item.id) == item.fingerprint:
                result.skipped.append(item.id)
                continue
            vector = cached.get(item.id)
            if vector:
                self._index.restore(item.id, vector, item.fingerprint, timestamp=item.created_at)
                result.skipped.append(item.id)
                continue
            to_embed.append((item.id, item.content, item.created_at))
            fingerprints[item.id] = item.fingerprint

        if to_embed:
            embedded = self._index.index_batch(to_embed, self._config.index_batch_size)
            result.indexed.extend(embedded.indexed)
            result.skipped.extend(embedded.skipped)
            result.failed.update(embedded.failed)
            for id in embedded.indexed:
                vector = self._index.vector(id)
                if vector is None:
                    continue
                try:
                    self._store.set_embedding(id, vector, model, fingerprints[id])
                except StoreError as e:
                    logger.warning("Could not cache embedding for %s: %s", id, e)

        logger.info(
            "Backfill: %d indexed, %d already available, %d failed",
            len(result.indexed), len(result.skipped), len(result.failed),
        )
        return result

    def _backfill_safe(self) -> None:
        try:
            self.backfill()
        except Exception:
            logger.exception("Backfill failed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, *, backfill: bool = True) -> None:
        """
        Start the index worker and the clipboard watcher.

        With ``backfill``, existing items are indexed in the background.
        """
        self._pending.start()
        if backfill and self._config.semantic_search:
            self._backfill_thread = threading.Thread(
                target=self._backfill_safe, name="clipkeep-backfill", daemon=True,
            )
            self._backfill_thread.start()
        self.watcher.start()

    def stop(self, *, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop watching. Queued index work finishes unless ``drain`` is False."""
        if self._watcher is not None:
            self._watcher.stop(timeout)
        self._pending.stop(drain=drain, timeout=timeout)

    def close(self) -> None:
        """Stop background work and release the store."""
        self.stop()
        self._events.close()
        if self._store is not None:
            self._store.close()
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(self, query: str, limit: int = 20) -> list[SearchMatch]:
        """
        Semantic search over captured items, best match first.

        Raises:
            ValueError: limit outside 1..500
            EmptyQueryError: blank query
            IndexNotReadyError: nothing indexed yet, or the model is unavailable
            SearchError: semantic search disabled, or the query could not be embedded
        """
        if not self._config.semantic_search:
            raise SearchError("Semantic search is disabled")
        matches = []
        for id, score in self._index.query(query, limit):
            item = self._store.get(id)
            if item is None:
                self._index.remove(id)
                continue
            matches.append(SearchMatch(item, score, extract_highlights(item.content, query)))
        self._events.publish(SearchCompleted(query, tuple(matches)))
        return matches

    def grep(self, query: str, limit: int = 20) -> list[CapturedItem]:
        """Case-insensitive substring search."""
        return self._store.search_text(query, limit)

    def suggest_collection(self, item_id: str) -> Optional[Collection]:
        collection_id = self._advisor.suggest_for_item(item_id, self._index, self._store)
        return self._store.get_collection(collection_id) if collection_id else None

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[CapturedItem]:
        return self._store.get(id)

    def list_items(
        self,
        limit: Optional[int] = None,
        *,
        collection_id: Optional[str] = None,
        favorites_only: bool = False,
        category: Optional[Category] = None,
    ) -> list[CapturedItem]:
        return self._store.list_items(
            limit, collection_id=collection_id,
            favorites_only=favorites_only, category=category,
        )

    def count(self) -> int:
        return self._store.count()

    def delete(self, id: str) -> None:
        """Delete an item from the store and the index."""
        self._store.delete(id)
        self._index.remove(id)
        logger.info("Deleted %s", id)

    def toggle_favorite(self, id: str) -> CapturedItem:
        return self._store.toggle_favorite(id)

    def assign(self, id: str, collection_id: Optional[str]) -> CapturedItem:
        """Move an item into a collection, or out of any with None."""
        return self._store.set_collection(id, collection_id)

    def prune(self, max_items: Optional[int] = None) -> list[str]:
        """
        Delete the oldest non-favorite items beyond ``max_items``
        (default: the configured limit). Returns deleted ids.
        """
        limit = self._config.max_items if max_items is None else max_items
        if max_items is None and self._config.unlimited:
            return []
        removed = self._store.prune(limit)
        for id in removed:
            self._index.remove(id)
        return removed

    # -------------------------------------------------------------------------
    # Collections and tags
    # -------------------------------------------------------------------------

    def create_collection(self, name: str, color: Optional[str] = None) -> Collection:
        return self._store.create_collection(name, color)

    def list_collections(self) -> list[Collection]:
        return self._store.list_collections()

    def delete_collection(self, id: str) -> None:
        self._store.delete_collection(id)

    def list_tags(self) -> list[Tag]:
        return self._store.list_tags()

    def status(self) -> dict:
        """Counts and states for display."""
        return {
            "store": str(self._store_path),
            "items": self._store.count(),
            "indexed": self._index.count(),
            "index_ready": self._index.ready,
            "embedding": self._embedding_provider.name,
            "watching": self._watcher is not None and self._watcher.running,
            "pending": self._pending.stats(),
        }
