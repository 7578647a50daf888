"""
Shared pytest fixtures for clipkeep tests.

Provides mock providers to avoid loading heavy ML models during testing.
"""

import hashlib
import math
import re
from pathlib import Path

import pytest

from clipkeep.api import ClipKeeper
from clipkeep.clip_store import ClipStore
from clipkeep.config import ClipConfig, ProviderConfig
from clipkeep.errors import SaveFailedError, TransientEmbeddingError
from clipkeep.providers.buffers import MemoryBuffer


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no ML model loading.
    """

    dimension = 32
    name = "mock-model"

    def __init__(self):
        self.embed_calls = 0
        self.batch_calls = 0

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        embedding = []
        for i in range(0, 32, 2):
            val = int(h[i:i+2], 16) / 255.0
            embedding.append(val)
        # Pad to full dimension
        return (embedding * 2)[:self.dimension]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class TopicEmbeddingProvider:
    """
    Embeds text onto a handful of topic axes by keyword.

    Gives related wording ("schema change discussion" vs "database
    migration meeting notes") a real semantic overlap without a model.
    """

    TOPICS = {
        "database": {"database", "schema", "migration", "table", "sql", "query", "column", "index"},
        "meeting": {"meeting", "notes", "discussion", "agenda", "minutes", "call", "standup"},
        "change": {"change", "changes", "migration", "update", "alter", "upgrade"},
        "food": {"grocery", "milk", "eggs", "bread", "butter", "recipe", "cheese"},
        "travel": {"flight", "hotel", "airport", "trip", "booking", "passport"},
    }

    name = "topic-model"

    def __init__(self):
        self.axes = list(self.TOPICS) + ["other"]
        self.embed_calls = 0

    @property
    def dimension(self) -> int:
        return len(self.axes)

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        vec = [0.0] * len(self.axes)
        for word in re.findall(r"[a-z]+", text.lower()):
            hit = False
            for i, topic in enumerate(self.TOPICS):
                if word in self.TOPICS[topic]:
                    vec[i] += 1.0
                    hit = True
            if not hit:
                vec[-1] += 0.1
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec] if norm else vec

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class FixedVectorProvider:
    """Returns preset vectors for known texts."""

    name = "fixed"

    def __init__(self, vectors: dict[str, list[float]]):
        self.vectors = vectors
        self.dimension = len(next(iter(vectors.values())))

    def embed(self, text: str) -> list[float]:
        if text not in self.vectors:
            raise TransientEmbeddingError(f"no vector for {text!r}")
        return list(self.vectors[text])

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class FailingEmbeddingProvider(MockEmbeddingProvider):
    """Raises ``error`` for the first ``failures`` calls, then embeds normally."""

    def __init__(self, error: Exception, failures: int = 1_000_000):
        super().__init__()
        self.error = error
        self.failures = failures

    def embed(self, text: str) -> list[float]:
        if self.failures > 0:
            self.failures -= 1
            self.embed_calls += 1
            raise self.error
        return super().embed(text)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class FlakyStore(ClipStore):
    """ClipStore whose create() fails ``failures`` times before succeeding."""

    def __init__(self, store_path: Path, failures: int, error_type=SaveFailedError):
        super().__init__(store_path)
        self.failures = failures
        self.error_type = error_type
        self.create_calls = 0

    def create(self, item, *, allow_duplicates=False):
        self.create_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error_type("simulated write failure")
        return super().create(item, allow_duplicates=allow_duplicates)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep error logs in the temp dir and ignore the caller's overrides."""
    for key in (
        "CLIPKEEP_POLLING_INTERVAL", "CLIPKEEP_MAX_ITEMS", "CLIPKEEP_ALLOW_DUPLICATES",
        "CLIPKEEP_SEMANTIC_SEARCH", "CLIPKEEP_AUTO_CATEGORIZE", "CLIPKEEP_RATE_LIMIT",
        "CLIPKEEP_RATE_WINDOW", "CLIPKEEP_EMBEDDING",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CLIPKEEP_STORE_PATH", str(tmp_path / "default-store"))
    # Use NLTK models only if already installed; never fetch them mid-test
    monkeypatch.setenv("CLIPKEEP_NLTK_DOWNLOAD", "0")


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def topic_provider():
    return TopicEmbeddingProvider()


@pytest.fixture
def failing_provider():
    """FailingEmbeddingProvider class, for tests to configure."""
    return FailingEmbeddingProvider


@pytest.fixture
def fixed_provider():
    """FixedVectorProvider class, for tests to configure."""
    return FixedVectorProvider


@pytest.fixture
def flaky_store():
    """FlakyStore class, for tests to configure."""
    return FlakyStore


@pytest.fixture
def memory_buffer():
    return MemoryBuffer()


@pytest.fixture
def clip_config(tmp_path):
    return ClipConfig(path=tmp_path / "store", embedding=ProviderConfig("hash"))


@pytest.fixture
def clip_store(tmp_path):
    store = ClipStore(tmp_path / "clips.db")
    yield store
    store.close()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def make_keeper(clip_config, topic_provider, memory_buffer, fake_clock, sleeps):
    """Factory for ClipKeeper instances over a temp store; closed at teardown."""
    created = []

    def factory(**overrides):
        kwargs = dict(
            config=clip_config,
            embedding_provider=topic_provider,
            buffer=memory_buffer,
            clock=fake_clock,
            sleep=sleeps.append,
        )
        kwargs.update(overrides)
        ck = ClipKeeper(**kwargs)
        created.append(ck)
        return ck

    yield factory
    for ck in created:
        ck.close()


@pytest.fixture
def keeper(make_keeper):
    return make_keeper()
