"""
Chunk and Workspace Stores

Persistence for workspaces and their document chunks. The similarity path
loads a workspace's vectors and ranks them in-process with numpy; the
recency path is the degraded read used when that fails.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select

from .config import DatabaseConfig
from .database import Database
from .embedding_service import EmbeddingService
from .errors import AuthorizationError, InputValidationError, NotFoundError, RetrievalError
from .models import DocumentChunk, MindOp
from .schemas import ChunkMetadata, DocumentSummary

logger = logging.getLogger("mindops.common.store")

DEFAULT_WORKSPACE_NAME = "My MindOp"
DEFAULT_WORKSPACE_DESCRIPTION = "Personal knowledge agent"
SEARCH_LIMIT = 20


class WorkspaceStore:
    """Workspace (MindOp) lookups, auto-creation and ownership checks."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, mindop_id: str) -> MindOp:
        with self.db.session() as s:
            mindop = s.get(MindOp, mindop_id)
        if mindop is None:
            raise NotFoundError(f"MindOp not found: {mindop_id}")
        return mindop

    def find_by_owner(self, user_id: str) -> Optional[MindOp]:
        with self.db.session() as s:
            return s.scalars(select(MindOp).where(MindOp.user_id == user_id)).first()

    def get_or_create_for_owner(self, user_id: str) -> MindOp:
        existing = self.find_by_owner(user_id)
        if existing is not None:
            return existing

        mindop = MindOp(
            user_id=user_id,
            mindop_name=DEFAULT_WORKSPACE_NAME,
            mindop_description=DEFAULT_WORKSPACE_DESCRIPTION,
        )
        with self.db.session() as s:
            s.add(mindop)
        logger.info("Created workspace %s for user %s", mindop.id, user_id)
        return mindop

    def search(self, term: str, limit: int = SEARCH_LIMIT) -> List[MindOp]:
        """
        Workspaces whose name contains ``term``, case-insensitively.

        Wildcards in ``term`` match literally.

        Raises:
            InputValidationError: blank term
        """
        if not term or not term.strip():
            raise InputValidationError("Search term is required")

        escaped = term.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self.db.session() as s:
            found = list(s.scalars(
                select(MindOp)
                .where(MindOp.mindop_name.ilike(f"%{escaped}%", escape="\\"))
                .order_by(MindOp.mindop_name, MindOp.id)
                .limit(limit)
            ))
        logger.debug("Search %r matched %d workspace(s)", term, len(found))
        return found

    def require_owned(self, mindop_id: str, user_id: str) -> MindOp:
        """Return the workspace if ``user_id`` owns it."""
        mindop = self.get(mindop_id)
        if mindop.user_id != user_id:
            raise AuthorizationError("You do not have permission to access this MindOp")
        return mindop

    def update(
        self,
        user_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> MindOp:
        mindop = self.get_or_create_for_owner(user_id)
        with self.db.session() as s:
            row = s.get(MindOp, mindop.id)
            if name is not None:
                row.mindop_name = name
            if description is not None:
                row.mindop_description = description
            s.flush()
            s.refresh(row)
            return row


class ChunkStore:
    """Document chunk persistence and similarity lookup."""

    def __init__(self, db: Database, config: Optional[DatabaseConfig] = None):
        self.db = db
        self.config = config or db.config

    def insert_chunks(
        self,
        mindop_id: str,
        user_id: str,
        source_csv_name: str,
        rows: Sequence[Tuple[str, List[float], ChunkMetadata]],
    ) -> int:
        """Insert (content, embedding, metadata) rows in a single transaction."""
        with self.db.session() as s:
            s.add_all([
                DocumentChunk(
                    mindop_id=mindop_id,
                    user_id=user_id,
                    content=content,
                    embedding=list(embedding),
                    chunk_metadata=meta.model_dump(mode="json"),
                    source_csv_name=source_csv_name,
                )
                for content, embedding, meta in rows
            ])
        return len(rows)

    def count_chunks(self, mindop_id: str) -> int:
        with self.db.session() as s:
            return s.scalar(
                select(func.count(DocumentChunk.id)).where(DocumentChunk.mindop_id == mindop_id)
            ) or 0

    def match_chunks(
        self,
        query_vector: List[float],
        mindop_id: str,
        limit: int,
        threshold: float,
    ) -> List[Tuple[DocumentChunk, float]]:
        """
        Rank a workspace's chunks by cosine similarity to ``query_vector``.

        Returns at most ``limit`` (chunk, similarity) pairs with similarity
        >= ``threshold``, highest first.

        Raises:
            RetrievalError: native similarity disabled or vectors unusable
        """
        if not self.config.native_similarity:
            raise RetrievalError("Similarity search is not available on this datastore")

        with self.db.session() as s:
            chunks = list(s.scalars(
                select(DocumentChunk).where(DocumentChunk.mindop_id == mindop_id)
            ))
        if not chunks:
            return []

        try:
            scores = EmbeddingService.batch_cosine_similarity(
                query_vector, [c.embedding for c in chunks]
            )
        except ValueError as e:
            raise RetrievalError(f"Similarity search failed: {e}") from e

        ranked = sorted(
            ((c, score) for c, score in zip(chunks, scores) if score >= threshold),
            key=lambda pair: (-pair[1], pair[0].id),
        )
        return ranked[:limit]

    def recent_chunks(self, mindop_id: str, limit: int) -> List[DocumentChunk]:
        with self.db.session() as s:
            return list(s.scalars(
                select(DocumentChunk)
                .where(DocumentChunk.mindop_id == mindop_id)
                .order_by(DocumentChunk.created_at.desc(), DocumentChunk.id.desc())
                .limit(limit)
            ))

    def delete_by_source(self, mindop_id: str, source_csv_name: str) -> int:
        """Delete every chunk of one source file. Returns the number deleted."""
        with self.db.session() as s:
            result = s.execute(
                delete(DocumentChunk).where(
                    DocumentChunk.mindop_id == mindop_id,
                    DocumentChunk.source_csv_name == source_csv_name,
                )
            )
            return result.rowcount or 0

    def list_documents(self, mindop_id: str) -> List[DocumentSummary]:
        with self.db.session() as s:
            rows = s.execute(
                select(
                    DocumentChunk.source_csv_name,
                    func.count(DocumentChunk.id),
                    func.max(DocumentChunk.created_at),
                )
                .where(DocumentChunk.mindop_id == mindop_id)
                .group_by(DocumentChunk.source_csv_name)
                .order_by(func.max(DocumentChunk.created_at).desc())
            ).all()
        return [
            DocumentSummary(source_csv_name=name, chunk_count=count, last_ingested_at=latest)
            for name, count, latest in rows
        ]
