"""
clipkeep

Clipboard history with deduplication, automatic categorization and
semantic search.

Quick Start:
    from clipkeep import ClipKeeper

    with ClipKeeper() as ck:    # uses ~/.clipkeep/
        ck.capture_text("Meeting notes about database migration")
        ck.process_pending()
        matches = ck.search("schema change discussion")

CLI Usage:
    clipkeep watch
    clipkeep find "query text"
    clipkeep list --favorites

Environment Variables:
    CLIPKEEP_STORE_PATH        - Override default store location
    CLIPKEEP_POLLING_INTERVAL  - Clipboard polling interval in seconds
    CLIPKEEP_MAX_ITEMS         - Item limit used by prune (0 = unlimited)
    CLIPKEEP_ALLOW_DUPLICATES  - Keep repeated copies of the same text
    CLIPKEEP_SEMANTIC_SEARCH   - Enable embedding and semantic search
    CLIPKEEP_EMBEDDING         - Embedding provider (hash, sentence-transformers, ollama)
    CLIPKEEP_VERBOSE           - Debug logging to stderr

The store is initialized automatically on first use. Configuration is persisted
in a TOML file within the store directory.
"""

# Configure quiet mode early (before any library imports)
import os
if not os.environ.get("CLIPKEEP_VERBOSE"):
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("TRANSFORMERS_VERBOSITY", "error")
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
    os.environ.setdefault("HF_HUB_DISABLE_TELEMETRY", "1")

from .api import ClipKeeper
from .errors import CaptureOutcome, CaptureStatus
from .types import CaptureEvent, CapturedItem, Category, Collection, SearchMatch, Tag

__version__ = "0.1.0"
__all__ = [
    "ClipKeeper",
    "CaptureEvent",
    "CaptureOutcome",
    "CaptureStatus",
    "CapturedItem",
    "Category",
    "Collection",
    "SearchMatch",
    "Tag",
]
