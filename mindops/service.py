"""
MindOps Service

Wires the stores, ingestion, query flow and collaboration engine together
and implements the three query modes:

- local: answer from the caller's own workspace, with conversation history
- sync_collaboration: answer inline from an approved target's workspace
- async_task: enqueue a collaboration task for the target to process
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select

from . import __version__
from .collaboration import ConnectionManager, TaskEngine, TaskPoller
from .common.config import MindOpsConfig, load_config
from .common.database import Database
from .common.embedding_service import EmbeddingService
from .common.errors import InputValidationError, NotFoundError, QueryTimeoutError
from .common.llm_client import LLMClient
from .common.models import CollaborationTask, DocumentChunk, MindOp
from .common.retry import RetryPolicy
from .common.schemas import (
    DocumentSummary,
    QueryMode,
    QueryRequest,
    QueryResponse,
    TaskStatus,
)
from .common.store import ChunkStore, WorkspaceStore
from .ingest import Chunker, IngestionPipeline, IngestionReport
from .retriever import ConversationManager, RAGPipeline, RAGResult, Retriever, Synthesizer

logger = logging.getLogger("mindops.service")

ASYNC_TASK_ACK = (
    "Your question was sent to the other MindOp. The answer will appear in "
    "this conversation when it is ready."
)


class MindOpsService:
    """Application facade used by the HTTP server and the worker."""

    def __init__(
        self,
        config: Optional[MindOpsConfig] = None,
        db: Optional[Database] = None,
        embedding_service: Optional[EmbeddingService] = None,
        llm_client: Optional[LLMClient] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.config = config or load_config()
        self.db = db or Database(self.config.database)
        self.db.init_db()

        self.embedding_service = embedding_service or EmbeddingService(config=self.config.embedding)
        self.llm_client = llm_client or LLMClient.from_config(self.config.llm)

        self.workspaces = WorkspaceStore(self.db)
        self.chunk_store = ChunkStore(self.db, self.config.database)

        chunking = self.config.chunking
        self.chunker = Chunker(
            chunk_size=chunking.chunk_size,
            chunk_overlap=chunking.chunk_overlap,
            min_chunk_tokens=chunking.min_chunk_tokens,
        )
        self.ingestion = IngestionPipeline(
            self.chunker, self.embedding_service, self.chunk_store, self.workspaces, sleep=sleep
        )

        retriever_cfg = self.config.retriever
        self.retriever = Retriever(
            self.chunk_store,
            topk=retriever_cfg.topk,
            similarity_threshold=retriever_cfg.similarity_threshold,
        )
        self.synthesizer = Synthesizer(
            self.llm_client,
            max_tokens=self.config.llm.max_tokens,
            policy=RetryPolicy(max_attempts=self.config.llm.max_attempts),
            sleep=sleep,
        )
        self.rag = RAGPipeline(self.embedding_service, self.retriever, self.synthesizer)
        self.conversations = ConversationManager(self.db, history_turns=retriever_cfg.history_turns)

        self.connections = ConnectionManager(self.db, self.workspaces)
        self.tasks = TaskEngine(
            self.db,
            self.workspaces,
            self.connections,
            self.rag,
            batch_size=self.config.collaboration.batch_size,
        )

    # ------------------------------------------------------------------
    # Query modes
    # ------------------------------------------------------------------

    async def handle_query(self, user_id: str, request: QueryRequest) -> QueryResponse:
        """
        Route a query by mode.

        Raises:
            InputValidationError: empty query or missing target
            AuthorizationError / ConnectionRequiredError: not allowed
            QueryTimeoutError: interactive flow exceeded query_timeout
            EmbeddingError / GenerationError: provider failures
        """
        query = (request.query or "").strip()
        if not query:
            raise InputValidationError("Query is required")

        if request.mindop_id:
            own = self.workspaces.require_owned(request.mindop_id, user_id)
        else:
            own = self.workspaces.get_or_create_for_owner(user_id)

        mode = QueryMode(request.mode)
        if mode == QueryMode.LOCAL:
            return await self._query_local(user_id, own.id, query, request.conversation_id)

        if not request.target_mindop_id:
            raise InputValidationError("target_mindop_id is required for collaboration")
        self.workspaces.get(request.target_mindop_id)
        self.connections.require_approved(user_id, request.target_mindop_id)

        if mode == QueryMode.SYNC_COLLABORATION:
            return await self._query_sync(
                user_id, own.id, request.target_mindop_id, query, request.conversation_id
            )

        task = self.tasks.create_task(user_id, request.target_mindop_id, query, request.priority)
        return QueryResponse(
            success=True,
            response=ASYNC_TASK_ACK,
            conversation_id=request.conversation_id,
            collaboration_task_id=task.id,
        )

    async def _bounded(self, query: str, mindop_id: str, history=None) -> RAGResult:
        timeout = self.config.retriever.query_timeout
        try:
            return await asyncio.wait_for(self.rag.run(query, mindop_id, history=history), timeout)
        except asyncio.TimeoutError:
            logger.warning("Query on %s exceeded %.0fs", mindop_id, timeout)
            raise QueryTimeoutError(timeout)

    async def _query_local(
        self, user_id: str, mindop_id: str, query: str, conversation_id: Optional[str]
    ) -> QueryResponse:
        history = self.conversations.load_history(conversation_id, user_id)
        result = await self._bounded(query, mindop_id, history)
        conversation_id = self.conversations.record_exchange(
            user_id,
            query,
            result.text,
            agent_mindop_id=mindop_id,
            conversation_id=conversation_id,
            mindop_id=mindop_id,
        )
        return QueryResponse(success=True, response=result.text, conversation_id=conversation_id)

    async def _query_sync(
        self,
        user_id: str,
        own_mindop_id: str,
        target_mindop_id: str,
        query: str,
        conversation_id: Optional[str],
    ) -> QueryResponse:
        if conversation_id:
            self.conversations.get(conversation_id, user_id)
        result = await self._bounded(query, target_mindop_id, history=None)
        conversation_id = self.conversations.record_exchange(
            user_id,
            query,
            result.text,
            agent_mindop_id=target_mindop_id,
            conversation_id=conversation_id,
            mindop_id=own_mindop_id,
        )
        logger.info("Sync collaboration %s -> %s answered", own_mindop_id, target_mindop_id)
        return QueryResponse(success=True, response=result.text, conversation_id=conversation_id)

    # ------------------------------------------------------------------
    # Ingestion and documents
    # ------------------------------------------------------------------

    def ingest(
        self, user_id: str, filename: str, data: bytes, mindop_id: Optional[str] = None
    ) -> IngestionReport:
        return self.ingestion.ingest_file(user_id, filename, data, mindop_id=mindop_id)

    def list_documents(self, user_id: str, mindop_id: Optional[str] = None) -> List[DocumentSummary]:
        if mindop_id:
            workspace = self.workspaces.require_owned(mindop_id, user_id)
        else:
            workspace = self.workspaces.get_or_create_for_owner(user_id)
        return self.chunk_store.list_documents(workspace.id)

    def delete_document(self, user_id: str, mindop_id: str, source_csv_name: str) -> int:
        """
        Delete all chunks of one source file.

        Raises:
            AuthorizationError: workspace not owned by the caller
            NotFoundError: no chunks matched
        """
        self.workspaces.require_owned(mindop_id, user_id)
        deleted = self.chunk_store.delete_by_source(mindop_id, source_csv_name)
        if deleted == 0:
            raise NotFoundError(f"No chunks found for document '{source_csv_name}'")
        logger.info("Deleted %d chunks of %s from %s", deleted, source_csv_name, mindop_id)
        return deleted

    # ------------------------------------------------------------------
    # Collaboration
    # ------------------------------------------------------------------

    async def process_task(self, user_id: str, task_id: str) -> CollaborationTask:
        return await self.tasks.process_task(task_id, user_id)

    async def run_worker(self, user_id: Optional[str] = None) -> List[CollaborationTask]:
        return await self.tasks.process_pending(acting_user_id=user_id)

    def surface_task_result(
        self, task: CollaborationTask, conversation_id: Optional[str] = None
    ) -> str:
        """Write a completed task's answer into the requester's conversation."""
        return self.conversations.record_exchange(
            task.requester_user_id,
            task.query,
            task.response or "",
            agent_mindop_id=task.target_mindop_id,
            conversation_id=conversation_id,
            mindop_id=task.requester_mindop_id,
        )

    def create_poller(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        on_failure=None,
    ) -> TaskPoller:
        return TaskPoller(
            self.tasks,
            user_id,
            on_result=lambda task: self.surface_task_result(task, conversation_id),
            on_failure=on_failure,
            interval=self.config.collaboration.poll_interval,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        with self.db.session() as s:
            stats = {
                "mindops": s.scalar(select(func.count(MindOp.id))) or 0,
                "chunks": s.scalar(select(func.count(DocumentChunk.id))) or 0,
                "pending_tasks": s.scalar(
                    select(func.count(CollaborationTask.id)).where(
                        CollaborationTask.status == TaskStatus.PENDING.value
                    )
                ) or 0,
            }
        return {
            "status": "ok",
            "version": __version__,
            "embedding": {
                "provider": self.config.embedding.provider,
                "model": self.config.embedding.model,
                "available": self.embedding_service.is_available,
            },
            "llm": {
                "provider": self.llm_client.provider,
                "available": self.llm_client.is_available,
            },
            "stats": stats,
        }
