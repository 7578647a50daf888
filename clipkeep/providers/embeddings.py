"""
Embedding providers.

- HashEmbedding: dependency-light feature hashing (words + character
  trigrams). Always available, deterministic across processes.
- SentenceTransformerEmbedding: local transformer model.
- OllamaEmbedding: local Ollama server over HTTP.
- CachingEmbeddingProvider: LRU wrapper keyed by content fingerprint.
"""

import hashlib
import logging
import os
import re
import threading
from collections import OrderedDict

import numpy as np
import requests

from ..errors import ModelUnavailableError, TransientEmbeddingError
from ..hashing import fingerprint
from .base import EmbeddingProvider, get_registry, truncate_for_embedding

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")


class HashEmbedding:
    """
    Feature-hashing embedding.

    Each word and each character trigram of each word is hashed into one
    of ``dimension`` buckets with a hash-derived sign, then the vector is
    L2-normalized. Texts sharing vocabulary or word fragments score
    higher; there is no model to load, so this provider never reports
    ModelUnavailableError.
    """

    def __init__(self, dimension: int = 512, trigram_weight: float = 0.5):
        if dimension < 8:
            raise ValueError(f"dimension must be >= 8, got {dimension}")
        self._dimension = dimension
        self._trigram_weight = trigram_weight

    @property
    def name(self) -> str:
        return f"hash-{self._dimension}"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, feature: str) -> tuple[int, float]:
        # blake2b, not hash(): str hashing is salted per process
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        return value % self._dimension, (1.0 if (value >> 63) & 1 == 0 else -1.0)

    def embed(self, text: str) -> list[float]:
        vec = np.zeros(self._dimension, dtype=np.float64)
        for token in _TOKEN_RE.findall(truncate_for_embedding(text).lower()):
            idx, sign = self._bucket("w:" + token)
            vec[idx] += sign
            padded = f"#{token}#"
            for i in range(len(padded) - 2):
                idx, sign = self._bucket("t:" + padded[i:i + 3])
                vec[idx] += sign * self._trigram_weight
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec.tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class SentenceTransformerEmbedding:
    """
    Embedding provider using a sentence-transformers model.

    The model is loaded on first use. A load failure is permanent for
    the lifetime of the instance and reported as ModelUnavailableError.
    """

    def __init__(self, model: str = "all-MiniLM-L6-v2", device: str | None = None):
        self.model_name = model
        self._device = device
        self._model = None
        self._load_error: Exception | None = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"sentence-transformers/{self.model_name}"

    def _get_model(self):
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise ModelUnavailableError(
                    f"Embedding model {self.model_name} unavailable: {self._load_error}"
                )
            try:
                from sentence_transformers import SentenceTransformer
                self._model = SentenceTransformer(self.model_name, device=self._device)
            except Exception as e:
                self._load_error = e
                logger.error("Failed to load embedding model %s: %s", self.model_name, e)
                raise ModelUnavailableError(
                    f"Embedding model {self.model_name} unavailable: {e}"
                ) from e
            logger.info("Embedding model %s loaded", self.model_name)
            return self._model

    @property
    def dimension(self) -> int:
        return int(self._get_model().get_sentence_embedding_dimension())

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()
        try:
            vectors = model.encode(
                [truncate_for_embedding(t) for t in texts],
                convert_to_numpy=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise TransientEmbeddingError(f"Embedding failed: {e}") from e
        return [v.tolist() for v in vectors]


DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama endpoint: explicit value, OLLAMA_HOST, then default."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434). On first
    use the model is looked up in the server's model list and pulled if
    missing; failures there make the provider unavailable.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
        timeout: float = 60.0,
        pull_timeout: float = 600.0,
    ):
        self.model = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout
        self.pull_timeout = pull_timeout
        self._dimension: int | None = None
        self._ready = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"ollama/{self.model}"

    def _installed(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            response.raise_for_status()
            models = response.json().get("models", [])
        except (requests.RequestException, ValueError) as e:
            raise ModelUnavailableError(
                f"Cannot reach Ollama at {self.base_url} ({e}). Is `ollama serve` running?"
            ) from e
        # Listed names carry a tag; a bare model name means ":latest"
        wanted = self.model if ":" in self.model else f"{self.model}:latest"
        return any(m.get("name") in (self.model, wanted) for m in models)

    def _pull(self) -> None:
        logger.info("Pulling Ollama model %s (first use)", self.model)
        try:
            response = requests.post(
                f"{self.base_url}/api/pull",
                json={"model": self.model, "stream": False},
                timeout=self.pull_timeout,
            )
            response.raise_for_status()
            status = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ModelUnavailableError(f"Failed to pull Ollama model {self.model}: {e}") from e
        if status.get("error"):
            raise ModelUnavailableError(
                f"Failed to pull Ollama model {self.model}: {status['error']}"
            )
        logger.info("Ollama model %s ready", self.model)

    def _ensure_ready(self) -> None:
        with self._lock:
            if self._ready:
                return
            if not self._installed():
                self._pull()
            self._ready = True

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension check"))
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self._ensure_ready()
        try:
            response = requests.post(
                f"{self.base_url}/api/embed",
                json={
                    "model": self.model,
                    "input": [truncate_for_embedding(t) for t in texts],
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientEmbeddingError(f"Ollama embedding request failed: {e}") from e

        if response.status_code == 404:
            raise ModelUnavailableError(f"Ollama model not found: {self.model}")
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise TransientEmbeddingError(
                f"Ollama embedding failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )

        try:
            vectors = response.json()["embeddings"]
        except (ValueError, KeyError) as e:
            raise TransientEmbeddingError(f"Malformed Ollama response: {e}") from e
        if len(vectors) != len(texts):
            raise TransientEmbeddingError(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        if vectors and self._dimension is None:
            self._dimension = len(vectors[0])
        return [list(map(float, v)) for v in vectors]


class CachingEmbeddingProvider:
    """
    LRU cache in front of another provider.

    Keyed by the fingerprint of the truncated input, so repeated text
    returns the exact same vector for the lifetime of the wrapper and
    skips the backend call.
    """

    def __init__(self, provider: EmbeddingProvider, max_entries: int = 1024):
        self._provider = provider
        self._max_entries = max_entries
        self._cache: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def name(self) -> str:
        return self._provider.name

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def wrapped(self) -> EmbeddingProvider:
        return self._provider

    def _lookup(self, key: str) -> tuple[float, ...] | None:
        with self._lock:
            vec = self._cache.get(key)
            if vec is not None:
                self._cache.move_to_end(key)
                self.hits += 1
            return vec

    def _remember(self, key: str, vec: list[float]) -> None:
        with self._lock:
            self._cache[key] = tuple(vec)
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)

    def embed(self, text: str) -> list[float]:
        key = fingerprint(truncate_for_embedding(text))
        cached = self._lookup(key)
        if cached is not None:
            return list(cached)
        with self._lock:
            self.misses += 1
        vec = self._provider.embed(text)
        self._remember(key, vec)
        return list(vec)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        keys = [fingerprint(truncate_for_embedding(t)) for t in texts]
        results: list[list[float] | None] = []
        missing: list[int] = []
        for i, key in enumerate(keys):
            cached = self._lookup(key)
            results.append(list(cached) if cached is not None else None)
            if cached is None:
                missing.append(i)
        if missing:
            with self._lock:
                self.misses += len(missing)
            vectors = self._provider.embed_batch([texts[i] for i in missing])
            for i, vec in zip(missing, vectors):
                self._remember(keys[i], vec)
                results[i] = list(vec)
        return results  # type: ignore[return-value]


# Register providers
_registry = get_registry()
_registry.register_embedding("hash", HashEmbedding)
_registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
