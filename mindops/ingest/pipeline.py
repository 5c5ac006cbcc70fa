"""
Ingestion Pipeline

Uploaded file -> row documents -> per-sheet chunks -> batched embeddings ->
one transactional insert.

Per-chunk embedding failures are absorbed: the chunk is stored with a zero
vector and flagged in its metadata, so the rest of the file still lands.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..common.embedding_service import EmbeddingService
from ..common.errors import InputValidationError
from ..common.schemas import ChunkMetadata
from ..common.store import ChunkStore, WorkspaceStore
from .chunker import Chunker, estimate_tokens
from .parser import ParsedDocument, parse_table, sanitize_text, source_type_for

logger = logging.getLogger("mindops.ingest.pipeline")

PROGRESS_EVERY = 10


@dataclass
class IngestionReport:
    """Outcome of one file ingestion"""
    chunks_created: int
    documents_processed: int
    source_file_name: str
    mindop_id: str
    average_chunk_tokens: int
    failed_embeddings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks_created": self.chunks_created,
            "documents_processed": self.documents_processed,
            "source_file_name": self.source_file_name,
            "mindop_id": self.mindop_id,
            "average_chunk_tokens": self.average_chunk_tokens,
            "failed_embeddings": self.failed_embeddings,
        }


def _group_by_sheet(documents: List[ParsedDocument]) -> List[Tuple[Optional[str], List[ParsedDocument]]]:
    groups: Dict[Optional[str], List[ParsedDocument]] = {}
    for doc in documents:
        groups.setdefault(doc.sheet_name, []).append(doc)
    return list(groups.items())


class IngestionPipeline:
    """Turns one uploaded spreadsheet into stored, embedded chunks."""

    def __init__(
        self,
        chunker: Chunker,
        embedding_service: EmbeddingService,
        chunk_store: ChunkStore,
        workspace_store: WorkspaceStore,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.chunker = chunker
        self.embedding_service = embedding_service
        self.chunk_store = chunk_store
        self.workspace_store = workspace_store
        self._sleep = sleep

    def ingest_file(
        self,
        owner_id: str,
        filename: str,
        data: bytes,
        mindop_id: Optional[str] = None,
    ) -> IngestionReport:
        """
        Parse, chunk, embed and store an uploaded file.

        Args:
            owner_id: Uploading user
            filename: Original file name, recorded for later deletion
            data: Raw file bytes
            mindop_id: Target workspace; defaults to the owner's workspace

        Raises:
            InputValidationError: unsupported type or nothing to store
            AuthorizationError: ``mindop_id`` is not owned by ``owner_id``
        """
        source_type = source_type_for(filename)
        documents = parse_table(filename, data)
        pieces = self._chunk_documents(documents)
        if not pieces:
            raise InputValidationError(f"No content found in {filename} after chunking")

        if mindop_id:
            workspace = self.workspace_store.require_owned(mindop_id, owner_id)
        else:
            workspace = self.workspace_store.get_or_create_for_owner(owner_id)

        logger.info(
            "Ingesting %s into %s: %d rows, %d chunks",
            filename, workspace.id, len(documents), len(pieces),
        )

        texts = [content for content, _, _ in pieces]
        vectors = self.embedding_service.embed_documents(texts, sleep=self._sleep)

        rows = []
        failed = 0
        total = len(pieces)
        for index, ((content, sheet_name, row_count), vector) in enumerate(zip(pieces, vectors)):
            embedding_failed = vector is None
            if embedding_failed:
                failed += 1
                logger.warning("Chunk %d of %s stored with zero vector", index, filename)
                vector = self.embedding_service.zero_vector()

            meta = ChunkMetadata(
                chunk_index=index,
                total_chunks=total,
                sheet_name=sheet_name,
                source_type=source_type,
                original_documents=row_count,
                embedding_failed=embedding_failed,
            )
            rows.append((content, vector, meta))

            if (index + 1) % PROGRESS_EVERY == 0:
                logger.info("Prepared %d/%d chunks", index + 1, total)

        self.chunk_store.insert_chunks(workspace.id, owner_id, filename, rows)

        average = round(sum(estimate_tokens(t) for t in texts) / len(texts))
        report = IngestionReport(
            chunks_created=len(rows),
            documents_processed=len(documents),
            source_file_name=filename,
            mindop_id=workspace.id,
            average_chunk_tokens=average,
            failed_embeddings=failed,
        )
        logger.info(
            "Ingested %s: %d chunks (%d failed embeddings)",
            filename, report.chunks_created, failed,
        )
        return report

    def _chunk_documents(
        self, documents: List[ParsedDocument]
    ) -> List[Tuple[str, Optional[str], int]]:
        """Chunk each sheet's rows; returns (content, sheet_name, row_count)."""
        pieces = []
        for sheet_name, docs in _group_by_sheet(documents):
            text = "\n".join(doc.content for doc in docs)
            for chunk in self.chunker.chunk(text):
                content = sanitize_text(chunk)
                if estimate_tokens(content) >= max(self.chunker.min_chunk_tokens, 1):
                    pieces.append((content, sheet_name, len(docs)))
        return pieces
