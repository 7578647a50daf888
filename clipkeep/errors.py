"""
Typed failures for clipkeep, plus error logging for the CLI.

Store, embedding and search failures are exceptions carrying a ``kind``
so callers can branch on the failure type. The capture pipeline converts
them into ``CaptureOutcome`` values; nothing escapes the capture path.

``log_exception`` logs full stack traces to a file while the CLI shows
clean messages to users.
"""

import os
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .types import CapturedItem


class ClipkeepError(Exception):
    """Base class for all clipkeep errors."""


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------

class FailureKind(str, Enum):
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    VALIDATION_FAILED = "validation_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    SAVE_FAILED = "save_failed"
    DELETE_FAILED = "delete_failed"


class StoreError(ClipkeepError):
    """A store operation failed."""
    kind: FailureKind = FailureKind.SAVE_FAILED
    retryable = False


class DuplicateError(StoreError):
    kind = FailureKind.DUPLICATE


class NotFoundError(StoreError):
    kind = FailureKind.NOT_FOUND


class ValidationError(StoreError):
    kind = FailureKind.VALIDATION_FAILED


class StoreUnavailableError(StoreError):
    kind = FailureKind.STORE_UNAVAILABLE
    retryable = True


class SaveFailedError(StoreError):
    kind = FailureKind.SAVE_FAILED
    retryable = True


class DeleteFailedError(StoreError):
    kind = FailureKind.DELETE_FAILED


# -----------------------------------------------------------------------------
# Embedding
# -----------------------------------------------------------------------------

class EmbeddingError(ClipkeepError):
    """An embedding provider could not produce a vector."""
    retryable = False


class ModelUnavailableError(EmbeddingError):
    """The provider failed to initialize; retrying will not help."""


class TransientEmbeddingError(EmbeddingError):
    """A single call failed; safe to retry."""
    retryable = True


# -----------------------------------------------------------------------------
# Search
# -----------------------------------------------------------------------------

class SearchError(ClipkeepError):
    """A similarity query could not be answered."""


class EmptyQueryError(SearchError):
    def __init__(self, message: str = "Search query cannot be empty"):
        super().__init__(message)


class IndexNotReadyError(SearchError):
    def __init__(self, message: str = "Search index is not ready"):
        super().__init__(message)


# -----------------------------------------------------------------------------
# Capture outcomes
# -----------------------------------------------------------------------------

class CaptureStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    VALIDATION_FAILED = "validation_failed"
    RATE_LIMITED = "rate_limited"
    SAVE_FAILED = "save_failed"


@dataclass(frozen=True)
class CaptureOutcome:
    """Result of handling one capture event."""
    status: CaptureStatus
    item: Optional["CapturedItem"] = None
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.status is CaptureStatus.ACCEPTED


# -----------------------------------------------------------------------------
# Error log
# -----------------------------------------------------------------------------

def _error_log_path() -> Path:
    """Resolve error log path, respecting CLIPKEEP_STORE_PATH."""
    store = os.environ.get("CLIPKEEP_STORE_PATH")
    if store:
        return Path(store) / "clipkeep-errors.log"
    return Path.home() / ".clipkeep" / "clipkeep-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Error log is best effort
    return log_path
