"""
Item store using SQLite.

The store is the source of truth for:
- Item identity, title, body and fingerprint
- Category, tags, favorite flag and collection membership
- Collections

Collection membership lives on the items; member lists and tags are
derived by querying items, never stored separately. Embeddings are kept
only as an advisory cache (with the model that produced them) so the
similarity index can be seeded at startup without recomputing vectors.

Single-item reads go through a read-through cache. Every write drops the
affected entries; nothing else refreshes the cache.
"""

import json
import logging
import re
import sqlite3
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from .errors import (
    DeleteFailedError,
    DuplicateError,
    NotFoundError,
    SaveFailedError,
    StoreError,
    StoreUnavailableError,
    ValidationError,
)
from .hashing import fingerprint as compute_fingerprint
from .types import (
    MAX_CONTENT_SIZE,
    MAX_TITLE_LENGTH,
    ELLIPSIS,
    Category,
    CapturedItem,
    Collection,
    Tag,
    content_size,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

# OperationalError messages that mean "try again later" rather than "bad write"
_UNAVAILABLE_MARKERS = ("locked", "busy", "unable to open", "disk i/o")


def _translate(e: sqlite3.Error, action: str, default: type[StoreError]) -> StoreError:
    """Map a sqlite3 error to a typed store failure."""
    message = f"{action} failed: {e}"
    if isinstance(e, sqlite3.OperationalError):
        if any(marker in str(e).lower() for marker in _UNAVAILABLE_MARKERS):
            return StoreUnavailableError(message)
    return default(message)


def _validate_item(item: CapturedItem) -> None:
    if not item.content or not item.content.strip():
        raise ValidationError("Item body is empty")
    if not item.title or not item.title.strip():
        raise ValidationError("Item title is empty")
    if len(item.title) > MAX_TITLE_LENGTH + len(ELLIPSIS):
        raise ValidationError(f"Item title exceeds {MAX_TITLE_LENGTH} characters")
    size = content_size(item.content)
    if size > MAX_CONTENT_SIZE:
        raise ValidationError(f"Item body is {size} bytes, limit is {MAX_CONTENT_SIZE}")


def _validate_color(color: Optional[str]) -> None:
    if color is not None and not _COLOR_RE.match(color):
        raise ValidationError(f"Invalid color {color!r}, expected #RRGGBB")


def _encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _decode_vector(blob: Optional[bytes]) -> Optional[tuple[float, ...]]:
    if not blob:
        return None
    return tuple(float(x) for x in np.frombuffer(blob, dtype=np.float32))


class ClipStore:
    """
    SQLite-backed store for captured items and collections.

    Thread-safe: one connection shared under a lock, so the capture path
    and the background index worker can both write.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._cache: dict[str, CapturedItem] = {}
        self.cache_hits = 0
        self.cache_misses = 0
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                source_app TEXT,
                category TEXT NOT NULL DEFAULT 'other',
                favorite INTEGER NOT NULL DEFAULT 0,
                collection_id TEXT,
                tags_json TEXT NOT NULL DEFAULT '[]',
                embedding BLOB,
                embedding_model TEXT,
                embedding_fingerprint TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_fingerprint
            ON items(fingerprint)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_created
            ON items(created_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_collection
            ON items(collection_id)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                color TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError("Store is closed")
        return self._conn

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> CapturedItem:
        try:
            tags = frozenset(json.loads(row["tags_json"] or "[]"))
        except (json.JSONDecodeError, TypeError):
            tags = frozenset()
        return CapturedItem(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            created_at=row["created_at"],
            fingerprint=row["fingerprint"],
            source_app=row["source_app"],
            category=Category.parse(row["category"]),
            embedding=_decode_vector(row["embedding"]),
            favorite=bool(row["favorite"]),
            collection_id=row["collection_id"],
            tags=tags,
        )

    @staticmethod
    def _row_to_collection(row: sqlite3.Row) -> Collection:
        return Collection(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -------------------------------------------------------------------------
    # Item writes
    # -------------------------------------------------------------------------

    def create(self, item: CapturedItem, *, allow_duplicates: bool = False) -> CapturedItem:
        """
        Insert a new item.

        Raises:
            ValidationError: Empty or oversized body, empty title
            DuplicateError: Same fingerprint already stored (unless allowed),
                or the id is taken
            StoreUnavailableError: Database locked or unreachable
            SaveFailedError: Any other write failure
        """
        _validate_item(item)
        fp = compute_fingerprint(item.content)
        if fp != item.fingerprint:
            item = replace(item, fingerprint=fp)

        with self._lock:
            conn = self._connection()
            if not allow_duplicates:
                existing = conn.execute(
                    "SELECT id FROM items WHERE fingerprint = ? LIMIT 1", (fp,)
                ).fetchone()
                if existing is not None:
                    raise DuplicateError(f"Duplicate of {existing['id']}")
            try:
                conn.execute("""
                    INSERT INTO items
                    (id, title, content, fingerprint, created_at, updated_at,
                     source_app, category, favorite, collection_id, tags_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    item.id, item.title, item.content, fp, item.created_at,
                    utc_now(), item.source_app, item.category.value,
                    int(item.favorite), item.collection_id,
                    json.dumps(sorted(item.tags), ensure_ascii=False),
                ))
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateError(f"Item id {item.id} already exists") from e
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Create", SaveFailedError) from e
            self._cache.pop(item.id, None)
        return replace(item, embedding=None)

    def update(self, item: CapturedItem) -> CapturedItem:
        """
        Replace an item's mutable fields.

        The fingerprint is recomputed from the body. A changed body drops the
        cached embedding since it no longer describes the text.

        Raises:
            NotFoundError: No item with this id
        """
        _validate_item(item)
        fp = compute_fingerprint(item.content)
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute("""
                    UPDATE items
                    SET title = ?, content = ?, fingerprint = ?, updated_at = ?,
                        source_app = ?, category = ?, favorite = ?,
                        collection_id = ?, tags_json = ?,
                        embedding = CASE WHEN fingerprint = ? THEN embedding ELSE NULL END
                    WHERE id = ?
                """, (
                    item.title, item.content, fp, utc_now(), item.source_app,
                    item.category.value, int(item.favorite), item.collection_id,
                    json.dumps(sorted(item.tags), ensure_ascii=False), fp, item.id,
                ))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Update", SaveFailedError) from e
            finally:
                self._cache.pop(item.id, None)
            if cursor.rowcount == 0:
                raise NotFoundError(f"Item not found: {item.id}")
        return self._require(item.id)

    def delete(self, id: str) -> None:
        """
        Delete an item.

        Raises:
            NotFoundError: No item with this id
            DeleteFailedError: The delete could not be written
        """
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute("DELETE FROM items WHERE id = ?", (id,))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Delete", DeleteFailedError) from e
            finally:
                self._cache.pop(id, None)
            if cursor.rowcount == 0:
                raise NotFoundError(f"Item not found: {id}")

    def _update_fields(self, id: str, assignments: str, params: tuple) -> CapturedItem:
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(
                    f"UPDATE items SET {assignments}, updated_at = ? WHERE id = ?",
                    params + (utc_now(), id),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Update", SaveFailedError) from e
            finally:
                self._cache.pop(id, None)
            if cursor.rowcount == 0:
                raise NotFoundError(f"Item not found: {id}")
        return self._require(id)

    def set_classification(self, id: str, category: Category, tags: Sequence[str]) -> CapturedItem:
        """Write back the classifier's category and tags."""
        return self._update_fields(
            id, "category = ?, tags_json = ?",
            (category.value, json.dumps(sorted(set(tags)), ensure_ascii=False)),
        )

    def set_tags(self, id: str, tags: Sequence[str]) -> CapturedItem:
        cleaned = sorted({t.strip() for t in tags if t and t.strip()})
        return self._update_fields(id, "tags_json = ?", (json.dumps(cleaned, ensure_ascii=False),))

    def set_collection(self, id: str, collection_id: Optional[str]) -> CapturedItem:
        """
        Move an item into a collection (or out of any, with None).

        Raises:
            NotFoundError: Unknown item or collection
        """
        if collection_id is not None and self.get_collection(collection_id) is None:
            raise NotFoundError(f"Collection not found: {collection_id}")
        return self._update_fields(id, "collection_id = ?", (collection_id,))

    def toggle_favorite(self, id: str) -> CapturedItem:
        return self._update_fields(id, "favorite = 1 - favorite", ())

    def set_embedding(
        self, id: str, vector: Sequence[float], model: str, fingerprint: str,
    ) -> bool:
        """
        Cache an item's embedding.

        Returns False if the item is gone. Does not touch ``updated_at``.
        """
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute("""
                    UPDATE items
                    SET embedding = ?, embedding_model = ?, embedding_fingerprint = ?
                    WHERE id = ?
                """, (_encode_vector(vector), model, fingerprint, id))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Set embedding", SaveFailedError) from e
            finally:
                self._cache.pop(id, None)
            return cursor.rowcount > 0

    def prune(self, max_items: int) -> list[str]:
        """
        Delete the oldest non-favorite items beyond ``max_items``.

        Favorites are never pruned, so the store may stay above the limit.

        Returns:
            Ids of deleted items
        """
        if max_items < 0:
            raise ValueError(f"max_items must be >= 0, got {max_items}")
        with self._lock:
            conn = self._connection()
            excess = self.count() - max_items
            if excess <= 0:
                return []
            rows = conn.execute("""
                SELECT id FROM items WHERE favorite = 0
                ORDER BY created_at ASC, id ASC
                LIMIT ?
            """, (excess,)).fetchall()
            ids = [row["id"] for row in rows]
            try:
                conn.executemany("DELETE FROM items WHERE id = ?", [(i,) for i in ids])
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Prune", DeleteFailedError) from e
            finally:
                for i in ids:
                    self._cache.pop(i, None)
        if ids:
            logger.info("Pruned %d items (limit %d)", len(ids), max_items)
        return ids

    # -------------------------------------------------------------------------
    # Item reads
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[CapturedItem]:
        """Fetch one item by id, or None."""
        with self._lock:
            cached = self._cache.get(id)
            if cached is not None:
                self.cache_hits += 1
                return cached
            self.cache_misses += 1
            try:
                row = self._connection().execute(
                    "SELECT * FROM items WHERE id = ?", (id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise _translate(e, "Get", StoreUnavailableError) from e
            if row is None:
                return None
            item = self._row_to_item(row)
            self._cache[id] = item
            return item

    def _require(self, id: str) -> CapturedItem:
        item = self.get(id)
        if item is None:
            raise NotFoundError(f"Item not found: {id}")
        return item

    def _select_items(self, sql: str, params: tuple) -> list[CapturedItem]:
        with self._lock:
            try:
                rows = self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise _translate(e, "Query", StoreUnavailableError) from e
        return [self._row_to_item(row) for row in rows]

    def list_items(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        collection_id: Optional[str] = None,
        favorites_only: bool = False,
        category: Optional[Category] = None,
    ) -> list[CapturedItem]:
        """Items newest first, optionally filtered."""
        clauses = []
        params: list = []
        if collection_id is not None:
            clauses.append("collection_id = ?")
            params.append(collection_id)
        if favorites_only:
            clauses.append("favorite = 1")
        if category is not None:
            clauses.append("category = ?")
            params.append(category.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([-1 if limit is None else limit, offset])
        return self._select_items(
            f"SELECT * FROM items {where} "
            "ORDER BY created_at DESC, id ASC LIMIT ? OFFSET ?",
            tuple(params),
        )

    def find_by_fingerprint(self, fingerprint: str) -> Optional[CapturedItem]:
        """Newest item with this fingerprint, or None."""
        items = self._select_items(
            "SELECT * FROM items WHERE fingerprint = ? ORDER BY created_at DESC LIMIT 1",
            (fingerprint,),
        )
        return items[0] if items else None

    def count(self) -> int:
        with self._lock:
            try:
                row = self._connection().execute("SELECT COUNT(*) FROM items").fetchone()
            except sqlite3.Error as e:
                raise _translate(e, "Count", StoreUnavailableError) from e
            return row[0]

    def search_text(self, query: str, limit: int = 20) -> list[CapturedItem]:
        """Case-insensitive substring search over titles and bodies, newest first."""
        if not query.strip():
            return []
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        return self._select_items("""
            SELECT * FROM items
            WHERE title LIKE ? ESCAPE '\\' OR content LIKE ? ESCAPE '\\'
            ORDER BY created_at DESC, id ASC LIMIT ?
        """, (pattern, pattern, limit))

    def cached_embeddings(self, model: str) -> dict[str, tuple[float, ...]]:
        """
        Cached vectors produced by ``model`` that still match their item's text.
        """
        with self._lock:
            try:
                rows = self._connection().execute("""
                    SELECT id, embedding FROM items
                    WHERE embedding IS NOT NULL
                      AND embedding_model = ?
                      AND embedding_fingerprint = fingerprint
                """, (model,)).fetchall()
            except sqlite3.Error as e:
                raise _translate(e, "Query", StoreUnavailableError) from e
        return {row["id"]: _decode_vector(row["embedding"]) for row in rows}

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def create_collection(
        self, name: str, color: Optional[str] = None, *, unique: bool = False,
    ) -> Collection:
        """
        Create a collection.

        Args:
            name: Display name, non-empty
            color: Optional ``#RRGGBB`` color
            unique: Reject a name already used by another collection
                (case-insensitive). Programmatic creation sets this.

        Raises:
            ValidationError: Empty name or malformed color
            DuplicateError: Name taken and ``unique`` is set
        """
        name = name.strip() if name else ""
        if not name:
            raise ValidationError("Collection name is empty")
        _validate_color(color)
        if unique and self.find_collection(name) is not None:
            raise DuplicateError(f"Collection already exists: {name}")
        now = utc_now()
        collection = Collection(id=new_id(), name=name, color=color, created_at=now, updated_at=now)
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("""
                    INSERT INTO collections (id, name, color, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (collection.id, name, color, now, now))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Create collection", SaveFailedError) from e
        return collection

    def update_collection(
        self, id: str, *, name: Optional[str] = None, color: Optional[str] = None,
    ) -> Collection:
        existing = self.get_collection(id)
        if existing is None:
            raise NotFoundError(f"Collection not found: {id}")
        if name is not None and not name.strip():
            raise ValidationError("Collection name is empty")
        _validate_color(color)
        updated = replace(
            existing,
            name=name.strip() if name is not None else existing.name,
            color=color if color is not None else existing.color,
            updated_at=utc_now(),
        )
        with self._lock:
            conn = self._connection()
            try:
                conn.execute(
                    "UPDATE collections SET name = ?, color = ?, updated_at = ? WHERE id = ?",
                    (updated.name, updated.color, updated.updated_at, id),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Update collection", SaveFailedError) from e
        return updated

    def delete_collection(self, id: str) -> None:
        """Delete a collection. Its items stay, detached from any collection."""
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute("DELETE FROM collections WHERE id = ?", (id,))
                conn.execute(
                    "UPDATE items SET collection_id = NULL WHERE collection_id = ?", (id,)
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise _translate(e, "Delete collection", DeleteFailedError) from e
            finally:
                self._cache.clear()
            if cursor.rowcount == 0:
                raise NotFoundError(f"Collection not found: {id}")

    def get_collection(self, id: str) -> Optional[Collection]:
        with self._lock:
            row = self._connection().execute(
                "SELECT * FROM collections WHERE id = ?", (id,)
            ).fetchone()
        return self._row_to_collection(row) if row else None

    def find_collection(self, name: str) -> Optional[Collection]:
        """First collection with this name (case-insensitive)."""
        with self._lock:
            row = self._connection().execute(
                "SELECT * FROM collections WHERE name = ? COLLATE NOCASE "
                "ORDER BY created_at ASC LIMIT 1",
                (name.strip(),),
            ).fetchone()
        return self._row_to_collection(row) if row else None

    def list_collections(self) -> list[Collection]:
        with self._lock:
            rows = self._connection().execute(
                "SELECT * FROM collections ORDER BY name COLLATE NOCASE, id"
            ).fetchall()
        return [self._row_to_collection(row) for row in rows]

    def collection_members(self, id: str) -> list[str]:
        """Ids of the items in a collection, newest first."""
        with self._lock:
            rows = self._connection().execute(
                "SELECT id FROM items WHERE collection_id = ? ORDER BY created_at DESC, id",
                (id,),
            ).fetchall()
        return [row["id"] for row in rows]

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def list_tags(self) -> list[Tag]:
        """All tags in use, with the items carrying them, sorted by name."""
        with self._lock:
            rows = self._connection().execute(
                "SELECT id, tags_json FROM items ORDER BY created_at DESC, id"
            ).fetchall()
        by_name: dict[str, list[str]] = {}
        for row in rows:
            try:
                names = json.loads(row["tags_json"] or "[]")
            except (json.JSONDecodeError, TypeError):
                continue
            for name in names:
                by_name.setdefault(name, []).append(row["id"])
        return [Tag(name=name, item_ids=tuple(ids)) for name, ids in sorted(by_name.items())]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._cache.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
