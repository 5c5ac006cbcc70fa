"""
RAG Pipeline

embed query -> retrieve -> synthesize, run sequentially for one workspace.

The blocking provider and database calls run in worker threads so the
caller can bound the whole flow with ``asyncio.wait_for``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..common.embedding_service import EmbeddingService
from .searcher import Retriever, RetrievedChunk
from .synthesizer import HistoryTurn, SynthesizedAnswer, Synthesizer

logger = logging.getLogger("mindops.retriever.pipeline")


@dataclass
class RAGResult:
    answer: SynthesizedAnswer
    chunks: List[RetrievedChunk] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.answer.answer

    @property
    def fallback_used(self) -> bool:
        return any(c.fallback for c in self.chunks)


class RAGPipeline:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        retriever: Retriever,
        synthesizer: Synthesizer,
    ):
        self.embedding_service = embedding_service
        self.retriever = retriever
        self.synthesizer = synthesizer

    async def run(
        self,
        query: str,
        mindop_id: str,
        history: Optional[List[HistoryTurn]] = None,
        limit: Optional[int] = None,
    ) -> RAGResult:
        """
        Answer ``query`` from the chunks of ``mindop_id``.

        Raises:
            EmbeddingError: query embedding failed
            GenerationError: the model failed
        """
        chunks: List[RetrievedChunk] = []

        if await asyncio.to_thread(self.retriever.has_chunks, mindop_id):
            query_vector = await asyncio.to_thread(self.embedding_service.embed_query, query)
            chunks = await asyncio.to_thread(self.retriever.search, query_vector, mindop_id, limit)
        else:
            logger.info("No data in %s, answering without context", mindop_id)

        logger.info("Retrieved %d chunks for %s", len(chunks), mindop_id)
        answer = await asyncio.to_thread(self.synthesizer.synthesize, query, chunks, history or [])
        return RAGResult(answer=answer, chunks=chunks)
