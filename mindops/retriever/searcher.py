"""
Searcher

Finds the chunks of one workspace most relevant to a query vector.

Primary path ranks stored vectors by cosine similarity above a deliberately
low threshold. When that path errors (or the datastore has no native
similarity) the most recent chunks are returned with a synthetic,
descending score instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..common.models import DocumentChunk
from ..common.store import ChunkStore

logger = logging.getLogger("mindops.retriever.searcher")

FALLBACK_TOP_SCORE = 0.8
FALLBACK_SCORE_STEP = 0.02
FALLBACK_MIN_SCORE = 0.01


@dataclass
class RetrievedChunk:
    """A single retrieved chunk"""
    id: int
    content: str
    source_csv_name: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False  # score is synthetic

    @classmethod
    def from_row(cls, row: DocumentChunk, similarity: float, fallback: bool = False) -> "RetrievedChunk":
        return cls(
            id=row.id,
            content=row.content,
            source_csv_name=row.source_csv_name,
            similarity=similarity,
            metadata=dict(row.chunk_metadata or {}),
            fallback=fallback,
        )


def fallback_score(position: int) -> float:
    """Synthetic similarity for the n-th most recent chunk."""
    return max(FALLBACK_MIN_SCORE, round(FALLBACK_TOP_SCORE - position * FALLBACK_SCORE_STEP, 4))


class Retriever:
    """
    Similarity search over one workspace's chunks.

    Features:
    - Empty-workspace short circuit
    - Configurable similarity threshold
    - Recency fallback with synthetic scores
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        topk: int = 10,
        similarity_threshold: float = 0.05,
    ):
        self._store = chunk_store
        self.topk = topk
        self.similarity_threshold = similarity_threshold

    def has_chunks(self, mindop_id: str) -> bool:
        return self._store.count_chunks(mindop_id) > 0

    def search(
        self,
        query_vector: List[float],
        mindop_id: str,
        limit: Optional[int] = None,
    ) -> List[RetrievedChunk]:
        """
        Return up to ``limit`` chunks ranked by descending similarity.

        Args:
            query_vector: Embedded query
            mindop_id: Workspace to search
            limit: Result cap (default topk)

        Returns:
            List of RetrievedChunk; empty when the workspace has no chunks
        """
        limit = limit or self.topk

        if self._store.count_chunks(mindop_id) == 0:
            logger.info("Workspace %s has no chunks, skipping search", mindop_id)
            return []

        try:
            matches = self._store.match_chunks(
                query_vector, mindop_id, limit, self.similarity_threshold
            )
        except Exception as e:
            logger.warning("Similarity search failed for %s, using recency fallback: %s", mindop_id, e)
            return self._search_recent(mindop_id, limit)

        results = [RetrievedChunk.from_row(row, score) for row, score in matches]
        logger.debug("Found %d chunks above %.2f for %s", len(results), self.similarity_threshold, mindop_id)
        return results

    def _search_recent(self, mindop_id: str, limit: int) -> List[RetrievedChunk]:
        rows = self._store.recent_chunks(mindop_id, limit)
        return [
            RetrievedChunk.from_row(row, fallback_score(i), fallback=True)
            for i, row in enumerate(rows)
        ]
