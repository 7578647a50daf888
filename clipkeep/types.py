"""
Data types for captured clipboard snippets.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# Maximum title length in characters (before the ellipsis marker)
MAX_TITLE_LENGTH = 256

# Maximum body size in UTF-8 bytes (10 MiB)
MAX_CONTENT_SIZE = 10 * 1024 * 1024

ELLIPSIS = "…"


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffff.

    All timestamps are UTC, stored without timezone suffix. Microseconds
    are kept so that captures within the same second still order newest
    first.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime."""
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    """Opaque unique identifier for items and collections."""
    return uuid.uuid4().hex


def content_size(text: str) -> int:
    """Size of text in UTF-8 bytes, the unit the size limit is expressed in."""
    return len(text.encode("utf-8", errors="surrogatepass"))


def truncate_title(text: str, limit: int = MAX_TITLE_LENGTH) -> str:
    """Truncate to `limit` characters, appending an ellipsis when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def derive_title(text: str) -> str:
    """
    Derive a display title from captured text.

    URLs are used as-is, multi-line content uses its first line,
    anything else is used whole. All variants are truncated.
    """
    trimmed = text.strip()
    if trimmed.startswith(("http://", "https://")):
        return truncate_title(trimmed)
    if "\n" in trimmed:
        first_line = trimmed.split("\n", 1)[0].strip()
        return truncate_title(first_line)
    return truncate_title(trimmed)


class Category(str, Enum):
    """Closed set of content categories."""
    TEXT = "text"
    CODE = "code"
    URL = "url"
    FILE = "file"
    IMAGE = "image"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> "Category":
        """Parse a stored value, mapping unknown values to OTHER."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER

    @property
    def display_name(self) -> str:
        if self is Category.URL:
            return "URL"
        return self.value.capitalize()


@dataclass(frozen=True)
class CaptureEvent:
    """A detected change in the external buffer."""
    text: str
    source_app: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class CapturedItem:
    """
    A captured snippet.

    This is a read-only snapshot. Changes go through the store, which
    returns a new CapturedItem.

    Attributes:
        id: Opaque unique identifier
        title: Display title derived from the content
        content: Full text body
        created_at: UTC timestamp when captured
        source_app: Identifier of the application the text came from
        category: Detected content category
        fingerprint: Hash of the normalized body, used for dedup
        embedding: Last known embedding (advisory; the index is authoritative)
        favorite: User favorite flag
        collection_id: Collection this item belongs to
        tags: Tag names
    """
    id: str
    title: str
    content: str
    created_at: str
    fingerprint: str
    source_app: Optional[str] = None
    category: Category = Category.OTHER
    embedding: Optional[tuple[float, ...]] = None
    favorite: bool = False
    collection_id: Optional[str] = None
    tags: frozenset[str] = frozenset()

    @classmethod
    def create(
        cls,
        content: str,
        *,
        title: Optional[str] = None,
        source_app: Optional[str] = None,
        created_at: Optional[str] = None,
        category: Category = Category.OTHER,
    ) -> "CapturedItem":
        """Build a new item with a fresh id and computed fingerprint."""
        from .hashing import fingerprint
        return cls(
            id=new_id(),
            title=derive_title(content) if title is None else title,
            content=content,
            created_at=created_at or utc_now(),
            fingerprint=fingerprint(content),
            source_app=source_app,
            category=category,
        )

    def with_content(self, content: str) -> "CapturedItem":
        """Copy with a new body; the fingerprint follows the body."""
        from .hashing import fingerprint
        return replace(self, content=content, fingerprint=fingerprint(content))

    def preview(self, max_length: int = 100) -> str:
        trimmed = self.content.strip()
        if len(trimmed) <= max_length:
            return trimmed
        return trimmed[:max_length] + ELLIPSIS

    def __str__(self) -> str:
        return f"{self.id[:8]} [{self.category.value}] {self.title[:60]}"


@dataclass(frozen=True)
class Collection:
    """
    A named grouping of items.

    Membership lives on the items (``CapturedItem.collection_id``);
    a collection never holds references to its members.
    """
    id: str
    name: str
    created_at: str
    updated_at: str
    color: Optional[str] = None


@dataclass(frozen=True)
class Tag:
    """A tag name with the ids of the items carrying it (derived)."""
    name: str
    item_ids: tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.item_ids)


@dataclass(frozen=True)
class SearchMatch:
    """A semantic search hit."""
    item: CapturedItem
    score: float
    highlights: tuple[str, ...] = ()

    @property
    def is_high_relevance(self) -> bool:
        return self.score > 0.7

    @property
    def is_medium_relevance(self) -> bool:
        return 0.4 < self.score <= 0.7
