"""
Collection suggestion for newly captured items.

A collection is scored by the mean cosine similarity between the new
item's embedding and each of its members' embeddings. The mean, rather
than the best single member, keeps one near-duplicate member from pulling
an unrelated item into a collection.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Optional

from .index import cosine_similarity

if TYPE_CHECKING:
    from .index import SimilarityIndex
    from .protocol import ClipStoreProtocol

logger = logging.getLogger(__name__)

# Mean similarity must be strictly greater than this to suggest a collection
ACCEPTANCE_THRESHOLD = 0.7


class GroupingAdvisor:
    """Suggests an existing collection for an item."""

    def __init__(self, threshold: float = ACCEPTANCE_THRESHOLD, scorer=cosine_similarity):
        self.threshold = threshold
        self._score = scorer

    def collection_score(
        self,
        embedding: Sequence[float],
        members: Sequence[Optional[Sequence[float]]],
    ) -> Optional[float]:
        """Mean similarity to the members that have embeddings, or None if none do."""
        scores = [self._score(embedding, m) for m in members if m is not None]
        if not scores:
            return None
        return sum(scores) / len(scores)

    def suggest_collection(
        self,
        embedding: Sequence[float],
        candidates: Mapping[str, Sequence[Optional[Sequence[float]]]],
    ) -> Optional[str]:
        """
        Pick the collection whose members are most similar on average.

        Args:
            embedding: The new item's vector
            candidates: collection id -> member vectors (None for members
                without an embedding)

        Returns:
            The winning collection id, or None when no collection's mean
            similarity exceeds the threshold. Equal means resolve to the
            smallest collection id.
        """
        best_id: Optional[str] = None
        best_score = 0.0
        for collection_id in sorted(candidates):
            score = self.collection_score(embedding, candidates[collection_id])
            if score is None:
                continue
            logger.debug("Collection %s mean similarity %.3f", collection_id, score)
            if score > self.threshold and (best_id is None or score > best_score):
                best_id, best_score = collection_id, score
        return best_id

    def suggest_for_item(
        self,
        item_id: str,
        index: "SimilarityIndex",
        store: "ClipStoreProtocol",
    ) -> Optional[str]:
        """Suggest a collection for an indexed item using the store's collections."""
        embedding = index.vector(item_id)
        if embedding is None:
            return None
        candidates: dict[str, list[Optional[tuple[float, ...]]]] = {}
        for collection in store.list_collections():
            member_ids = [
                m for m in store.collection_members(collection.id) if m != item_id
            ]
            if member_ids:
                candidates[collection.id] = [index.vector(m) for m in member_ids]
        return self.suggest_collection(embedding, candidates)
