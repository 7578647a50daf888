"""
Provider interfaces for clipkeep services.

Each provider type defines a protocol that concrete implementations must follow.
Providers are selected at startup from the store configuration:
- Embedding generation (for semantic search)
- Buffer sources (the clipboard the watcher polls)

Concrete providers are auto-registered when this module is imported.
"""

from .base import (
    BufferSource,
    EmbeddingProvider,
    ProviderRegistry,
    get_registry,
    truncate_for_embedding,
)

# Import concrete providers to trigger registration
from . import buffers
from . import embeddings

__all__ = [
    # Protocols
    "EmbeddingProvider",
    "BufferSource",
    # Registry
    "ProviderRegistry",
    "get_registry",
    "truncate_for_embedding",
]
