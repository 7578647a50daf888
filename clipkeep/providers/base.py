"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Optional, Protocol, runtime_checkable


# Embedding inputs are cut to this many characters to bound latency
MAX_EMBED_CHARS = 10_000


def truncate_for_embedding(text: str) -> str:
    """Cut text to the maximum analyzed length."""
    return text[:MAX_EMBED_CHARS] if len(text) > MAX_EMBED_CHARS else text


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    Embeddings enable semantic similarity search. The same provider instance
    must be used for both indexing and querying to ensure consistent vectors.

    Contract:
    - Identical input yields an identical vector for the lifetime of the
      instance (wrap with CachingEmbeddingProvider if the backend is not
      deterministic).
    - Vector length is fixed per provider (``dimension``).
    - Input is truncated to MAX_EMBED_CHARS before embedding.
    - Raises ModelUnavailableError when the backend cannot initialize,
      TransientEmbeddingError for retryable per-call failures.
    - Safe to call from a background worker thread.

    Example implementation:
        class SentenceTransformerEmbedding:
            def __init__(self, model: str = "all-MiniLM-L6-v2"):
                from sentence_transformers import SentenceTransformer
                self.model = SentenceTransformer(model)

            @property
            def dimension(self) -> int:
                return self.model.get_sentence_embedding_dimension()

            def embed(self, text: str) -> list[float]:
                return self.model.encode(text).tolist()
    """

    @property
    def name(self) -> str:
        """Identity of the model producing the vectors (stored with cached vectors)."""
        ...

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed

        Returns:
            A list of floats representing the embedding vector
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, one per input text
        """
        ...


# -----------------------------------------------------------------------------
# External buffer
# -----------------------------------------------------------------------------

@runtime_checkable
class BufferSource(Protocol):
    """
    A shared text buffer that is polled for changes (the clipboard).

    ``change_count`` must increase whenever the buffer content changes,
    so pollers can skip reading unchanged content.
    """

    def change_count(self) -> int:
        """Monotonically increasing change counter."""
        ...

    def read_text(self) -> Optional[str]:
        """Current text content, or None when the payload is not text."""
        ...

    def source_app(self) -> Optional[str]:
        """Identifier of the application that last wrote the buffer, if known."""
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows the store configuration (TOML) to specify providers by name
    rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("hash", HashEmbedding)

        # Later, from config:
        provider = registry.create_embedding("hash", {"dimension": 256})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._buffer_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load all provider modules."""
        if self._lazy_loaded:
            return

        self._lazy_loaded = True

        # Import provider modules to trigger registration
        # These imports only register classes, they don't instantiate
        from . import embeddings  # noqa
        from . import buffers  # noqa

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def register_buffer(self, name: str, provider_class: type) -> None:
        """Register a buffer source class."""
        self._buffer_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}. "
                f"Install missing dependencies or check provider name."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_buffer(self, name: str, params: dict | None = None) -> BufferSource:
        """Create a buffer source instance."""
        self._ensure_providers_loaded()
        return self._create_provider("buffer", name, self._buffer_providers, params)

    # Introspection

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())

    def list_buffer_providers(self) -> list[str]:
        """List registered buffer source names."""
        self._ensure_providers_loaded()
        return list(self._buffer_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
