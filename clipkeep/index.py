"""
In-memory similarity index over item embeddings.

Maps item id to an embedding vector and answers nearest-neighbor queries
by cosine similarity. The index is the authority for embeddings; vectors
persisted with items are only a cache used to seed it at startup.

Concurrency:
- the id -> entry mapping is guarded by a lock and only swapped whole
  entries at a time
- entries are immutable (read-only numpy arrays), so a query working on a
  snapshot sees either the old or the new vector, never a partial one
- writers for the same id are serialized by a per-id lock, while embedding
  calls for different ids may run concurrently
"""

import logging
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .errors import (
    EmbeddingError,
    EmptyQueryError,
    IndexNotReadyError,
    ModelUnavailableError,
    SearchError,
    TransientEmbeddingError,
)
from .hashing import fingerprint
from .providers.base import EmbeddingProvider
from .types import utc_now

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 500
DEFAULT_BATCH_SIZE = 10


@dataclass(frozen=True, eq=False)
class IndexEntry:
    """One indexed item. Never handed out of the index."""
    id: str
    vector: np.ndarray
    norm: float
    fingerprint: str
    timestamp: str


@dataclass
class BatchResult:
    """Outcome of ``index_batch``."""
    indexed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.indexed) + len(self.skipped) + len(self.failed)


class _IdLockSlot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


def _as_vector(values: Sequence[float]) -> np.ndarray:
    vec = np.array(values, dtype=np.float64)
    if vec.ndim != 1 or vec.size == 0:
        raise ValueError(f"Embedding must be a non-empty 1-D vector, got shape {vec.shape}")
    vec.flags.writeable = False
    return vec


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Zero-norm vectors and vectors of different length score 0.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


class SimilarityIndex:
    """
    Identity -> vector mapping with cosine kNN queries.

    Args:
        provider: Embedding provider used for both indexing and queries
        batch_size: Default chunk size for ``index_batch``
    """

    def __init__(self, provider: EmbeddingProvider, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._provider = provider
        self._batch_size = batch_size
        self._entries: dict[str, IndexEntry] = {}
        self._lock = threading.Lock()
        self._id_locks: dict[str, _IdLockSlot] = {}
        self._id_locks_guard = threading.Lock()
        self._unavailable: Optional[ModelUnavailableError] = None

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        """True once at least one entry is indexed and the model is usable."""
        with self._lock:
            return bool(self._entries) and self._unavailable is None

    @property
    def unavailable_reason(self) -> Optional[str]:
        return str(self._unavailable) if self._unavailable else None

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, id: object) -> bool:
        with self._lock:
            return id in self._entries

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def vector(self, id: str) -> Optional[tuple[float, ...]]:
        """Copy of the indexed vector for ``id``, or None."""
        with self._lock:
            entry = self._entries.get(id)
        if entry is None:
            return None
        return tuple(float(x) for x in entry.vector)

    def fingerprint_of(self, id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(id)
        return entry.fingerprint if entry else None

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    @contextmanager
    def _id_lock(self, id: str) -> Iterator[None]:
        """
        Hold the writer lock for ``id``.

        Lock slots are reference counted and dropped only when no thread
        holds or waits on them, so every writer to an id shares one lock.
        """
        with self._id_locks_guard:
            slot = self._id_locks.get(id)
            if slot is None:
                slot = self._id_locks[id] = _IdLockSlot()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._id_locks_guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._id_locks[id]

    def _embed(self, text: str) -> list[float]:
        try:
            vec = self._provider.embed(text)
        except ModelUnavailableError as e:
            self._unavailable = e
            raise
        except EmbeddingError:
            raise
        except Exception as e:
            raise TransientEmbeddingError(f"{type(e).__name__}: {e}") from e
        self._unavailable = None
        return vec

    def _store(self, id: str, vector: Sequence[float], fp: str, timestamp: Optional[str]) -> None:
        vec = _as_vector(vector)
        with self._lock:
            prior = self._entries.get(id)
            ts = timestamp or (prior.timestamp if prior else utc_now())
            self._entries[id] = IndexEntry(
                id=id,
                vector=vec,
                norm=float(np.linalg.norm(vec)),
                fingerprint=fp,
                timestamp=ts,
            )

    def upsert(self, id: str, text: str, *, timestamp: Optional[str] = None) -> bool:
        """
        Index ``text`` under ``id``.

        No-op when ``id`` is already indexed with the same text fingerprint.

        Returns:
            True if an embedding was computed and stored

        Raises:
            EmbeddingError: The provider failed; any prior entry is left untouched
        """
        fp = fingerprint(text)
        with self._id_lock(id):
            with self._lock:
                existing = self._entries.get(id)
            if existing is not None and existing.fingerprint == fp:
                return False
            vec = self._embed(text)
            self._store(id, vec, fp, timestamp)
        logger.debug("Indexed %s", id)
        return True

    def restore(
        self,
        id: str,
        vector: Sequence[float],
        fingerprint: str,
        *,
        timestamp: Optional[str] = None,
    ) -> None:
        """Seed an entry from a previously computed vector without embedding."""
        with self._id_lock(id):
            self._store(id, vector, fingerprint, timestamp)

    def remove(self, id: str) -> bool:
        """Remove ``id``. Returns False if it was not indexed."""
        with self._id_lock(id):
            with self._lock:
                return self._entries.pop(id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def index_batch(
        self,
        items: Iterable[tuple],
        batch_size: Optional[int] = None,
    ) -> BatchResult:
        """
        Index many ``(id, text)`` or ``(id, text, timestamp)`` tuples.

        Work is chunked into ``batch_size`` groups sent to the provider's
        batch call. When a batch call fails, its items are retried one by
        one so a single bad item does not fail its neighbours.
        """
        size = batch_size or self._batch_size
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")
        result = BatchResult()

        # (id, text, fingerprint, fingerprint seen at planning time, timestamp)
        pending: list[tuple[str, str, str, Optional[str], Optional[str]]] = []
        for item in items:
            id, text = item[0], item[1]
            timestamp = item[2] if len(item) > 2 else None
            fp = fingerprint(text)
            seen = self.fingerprint_of(id)
            if seen == fp:
                result.skipped.append(id)
                continue
            pending.append((id, text, fp, seen, timestamp))

        for start in range(0, len(pending), size):
            self._index_chunk(pending[start:start + size], result)

        logger.info(
            "Batch indexed %d, skipped %d, failed %d",
            len(result.indexed), len(result.skipped), len(result.failed),
        )
        return result

    def _changed_since(self, id: str, seen: Optional[str]) -> bool:
        """True when another writer touched ``id`` after batch planning."""
        if self.fingerprint_of(id) == seen:
            return False
        logger.debug("Skipping batch write for %s: entry changed concurrently", id)
        return True

    def _index_chunk(
        self,
        chunk: list[tuple[str, str, str, Optional[str], Optional[str]]],
        result: BatchResult,
    ) -> None:
        try:
            vectors = self._provider.embed_batch([text for _, text, _, _, _ in chunk])
            if len(vectors) != len(chunk):
                raise TransientEmbeddingError(
                    f"Provider returned {len(vectors)} vectors for {len(chunk)} texts"
                )
        except ModelUnavailableError as e:
            self._unavailable = e
            for id, *_ in chunk:
                result.failed[id] = e
            return
        except Exception as e:
            logger.debug("Batch embedding failed, falling back to single items: %s", e)
            for id, text, fp, seen, timestamp in chunk:
                try:
                    with self._id_lock(id):
                        if self._changed_since(id, seen):
                            result.skipped.append(id)
                            continue
                        self._store(id, self._embed(text), fp, timestamp)
                    result.indexed.append(id)
                except (EmbeddingError, ValueError) as item_error:
                    result.failed[id] = item_error
            return

        self._unavailable = None
        for (id, _, fp, seen, timestamp), vec in zip(chunk, vectors):
            try:
                with self._id_lock(id):
                    if self._changed_since(id, seen):
                        result.skipped.append(id)
                        continue
                    self._store(id, vec, fp, timestamp)
                result.indexed.append(id)
            except ValueError as e:
                result.failed[id] = e

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    @staticmethod
    def score(a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity primitive shared with the grouping advisor."""
        return cosine_similarity(a, b)

    def query(self, text: str, limit: int = DEFAULT_LIMIT) -> list[tuple[str, float]]:
        """
        Nearest neighbours of ``text``.

        Returns:
            Up to ``limit`` ``(id, score)`` pairs, best first. Equal scores
            order newer items first, then by id.

        Raises:
            ValueError: limit outside 1..500
            EmptyQueryError: blank query
            IndexNotReadyError: nothing indexed, or the model is unavailable
            SearchError: the query embedding failed transiently
        """
        if not 1 <= limit <= MAX_LIMIT:
            raise ValueError(f"limit must be in 1..{MAX_LIMIT}, got {limit}")
        if not text or not text.strip():
            raise EmptyQueryError()

        with self._lock:
            entries = list(self._entries.values())
        if not entries:
            raise IndexNotReadyError()

        try:
            query_vec = np.asarray(self._embed(text), dtype=np.float64)
        except ModelUnavailableError as e:
            raise IndexNotReadyError(f"Search index is not ready: {e}") from e
        except EmbeddingError as e:
            raise SearchError(f"Query embedding failed: {e}") from e

        scores = self._score_entries(query_vec, entries)

        ranked = sorted(zip(entries, scores), key=lambda pair: pair[0].id)
        ranked.sort(key=lambda pair: pair[0].timestamp, reverse=True)
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return [(entry.id, score) for entry, score in ranked[:limit]]

    @staticmethod
    def _score_entries(query_vec: np.ndarray, entries: list[IndexEntry]) -> list[float]:
        query_norm = float(np.linalg.norm(query_vec))
        scores = [0.0] * len(entries)
        if query_norm == 0.0:
            return scores

        # Entries restored from another model may have a different length
        same = [i for i, e in enumerate(entries) if e.vector.shape == query_vec.shape]
        if not same:
            return scores

        matrix = np.stack([entries[i].vector for i in same])
        norms = np.array([entries[i].norm for i in same]) * query_norm
        dots = matrix @ query_vec
        sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        sims = np.clip(sims, -1.0, 1.0)
        for i, s in zip(same, sims):
            scores[i] = float(s)
        return scores
