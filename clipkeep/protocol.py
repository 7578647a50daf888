"""
Protocol definition for the item store collaborator.

The pipeline only talks to storage through this interface, so the SQLite
store can be swapped for another backend (or a test double) without
touching the capture path.

Failures are raised as ``StoreError`` subclasses carrying a ``kind``:
duplicate, not_found, validation_failed, store_unavailable, save_failed,
delete_failed.
"""

from typing import Optional, Protocol, Sequence, runtime_checkable

from .types import Category, CapturedItem, Collection, Tag


@runtime_checkable
class ClipStoreProtocol(Protocol):
    """
    Durable storage for captured items and collections.

    Implemented by:
    - ClipStore (local SQLite)
    """

    # -- Items --

    def create(self, item: CapturedItem, *, allow_duplicates: bool = False) -> CapturedItem: ...

    def update(self, item: CapturedItem) -> CapturedItem: ...

    def delete(self, id: str) -> None: ...

    def get(self, id: str) -> Optional[CapturedItem]: ...

    def list_items(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        collection_id: Optional[str] = None,
        favorites_only: bool = False,
        category: Optional[Category] = None,
    ) -> list[CapturedItem]: ...

    def find_by_fingerprint(self, fingerprint: str) -> Optional[CapturedItem]: ...

    def count(self) -> int: ...

    def set_classification(
        self, id: str, category: Category, tags: Sequence[str],
    ) -> CapturedItem: ...

    def set_collection(self, id: str, collection_id: Optional[str]) -> CapturedItem: ...

    def toggle_favorite(self, id: str) -> CapturedItem: ...

    def set_embedding(
        self, id: str, vector: Sequence[float], model: str, fingerprint: str,
    ) -> bool: ...

    def cached_embeddings(self, model: str) -> dict[str, tuple[float, ...]]: ...

    def search_text(self, query: str, limit: int = 20) -> list[CapturedItem]: ...

    def prune(self, max_items: int) -> list[str]: ...

    # -- Collections --

    def create_collection(
        self, name: str, color: Optional[str] = None, *, unique: bool = False,
    ) -> Collection: ...

    def update_collection(
        self, id: str, *, name: Optional[str] = None, color: Optional[str] = None,
    ) -> Collection: ...

    def delete_collection(self, id: str) -> None: ...

    def get_collection(self, id: str) -> Optional[Collection]: ...

    def find_collection(self, name: str) -> Optional[Collection]: ...

    def list_collections(self) -> list[Collection]: ...

    def collection_members(self, id: str) -> list[str]: ...

    # -- Tags --

    def list_tags(self) -> list[Tag]: ...

    def close(self) -> None: ...
