"""
Collaboration Task Engine

A requester enqueues a query against a target workspace; the target side
claims it, runs the query flow over the target's own chunks, and records a
terminal state.

State machine:
    pending -> processing -> complete | failed
    complete -> consumed (requester has surfaced the response)

Every transition is a conditional UPDATE on the expected current status, so
two workers can never both claim the same pending task.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import case, select, update

from ..common.database import Database
from ..common.errors import (
    AuthorizationError,
    InputValidationError,
    MindOpsError,
    NotFoundError,
    TaskStateError,
)
from ..common.models import CollaborationTask, MindOp
from ..common.schemas import TaskPriority, TaskProcessingMetadata, TaskStatus, UsedChunk
from ..common.store import WorkspaceStore
from ..retriever.pipeline import RAGPipeline
from .connections import ConnectionManager

logger = logging.getLogger("mindops.collaboration.tasks")

ALLOWED_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.PROCESSING},
    TaskStatus.PROCESSING: {TaskStatus.COMPLETE, TaskStatus.FAILED},
    TaskStatus.COMPLETE: {TaskStatus.CONSUMED},
    TaskStatus.FAILED: set(),
    TaskStatus.CONSUMED: set(),
}

_PRIORITY_RANK = case(
    (CollaborationTask.priority == TaskPriority.HIGH.value, 2),
    (CollaborationTask.priority == TaskPriority.NORMAL.value, 1),
    else_=0,
)


class TaskEngine:
    """Creates, claims, processes and lists collaboration tasks."""

    def __init__(
        self,
        db: Database,
        workspace_store: WorkspaceStore,
        connections: ConnectionManager,
        rag_pipeline: RAGPipeline,
        batch_size: int = 5,
    ):
        self.db = db
        self.workspaces = workspace_store
        self.connections = connections
        self.rag = rag_pipeline
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_task(
        self,
        requester_user_id: str,
        target_mindop_id: str,
        query: str,
        priority: TaskPriority = TaskPriority.NORMAL,
    ) -> CollaborationTask:
        """
        Enqueue ``query`` against ``target_mindop_id``.

        Raises:
            InputValidationError: empty query
            NotFoundError: unknown target
            ConnectionRequiredError: no approved follow to the target
        """
        if not query or not query.strip():
            raise InputValidationError("Query is required")

        self.workspaces.get(target_mindop_id)
        self.connections.require_approved(requester_user_id, target_mindop_id)
        requester = self.workspaces.get_or_create_for_owner(requester_user_id)

        task = CollaborationTask(
            requester_mindop_id=requester.id,
            target_mindop_id=target_mindop_id,
            requester_user_id=requester_user_id,
            query=query.strip(),
            status=TaskStatus.PENDING.value,
            priority=TaskPriority(priority).value,
        )
        with self.db.session() as s:
            s.add(task)
        logger.info("Task %s created: %s -> %s", task.id, requester.id, target_mindop_id)
        return task

    def get(self, task_id: str) -> CollaborationTask:
        with self.db.session() as s:
            task = s.get(CollaborationTask, task_id)
        if task is None:
            raise NotFoundError(f"Collaboration task not found: {task_id}")
        return task

    def _transition(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        **fields,
    ) -> bool:
        """Move ``task_id`` only if it is still in ``from_status``."""
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise TaskStateError(f"Illegal transition {from_status.value} -> {to_status.value}")

        with self.db.session() as s:
            result = s.execute(
                update(CollaborationTask)
                .where(
                    CollaborationTask.id == task_id,
                    CollaborationTask.status == from_status.value,
                )
                .values(status=to_status.value, **fields)
                .execution_options(synchronize_session=False)
            )
            moved = result.rowcount == 1

        if moved:
            logger.info("Task %s: %s -> %s", task_id, from_status.value, to_status.value)
        return moved

    # ------------------------------------------------------------------
    # Processing (target side)
    # ------------------------------------------------------------------

    async def process_task(self, task_id: str, acting_user_id: str) -> CollaborationTask:
        """
        Claim and run one pending task on behalf of the target owner.

        Authorization and state are checked before anything is written. Once
        claimed, the task always ends in ``complete`` or ``failed``.

        Raises:
            NotFoundError: unknown task
            AuthorizationError: acting user does not own the target workspace
            TaskStateError: task is not pending (or another worker claimed it)
            MindOpsError: the query flow failed (task is marked failed first)
        """
        task = self.get(task_id)
        target = self.workspaces.get(task.target_mindop_id)
        if target.user_id != acting_user_id:
            raise AuthorizationError("Only the target MindOp owner can process this task")

        if task.status != TaskStatus.PENDING.value:
            raise TaskStateError(f"Task {task_id} is {task.status}, expected pending")
        if not self._transition(task_id, TaskStatus.PENDING, TaskStatus.PROCESSING):
            raise TaskStateError(f"Task {task_id} was claimed by another worker")

        try:
            result = await self.rag.run(task.query, task.target_mindop_id, history=None)
            metadata = TaskProcessingMetadata(
                chunks_found=len(result.chunks),
                chunks_used=[
                    UsedChunk(id=c.id, similarity=c.similarity, source_csv_name=c.source_csv_name)
                    for c in result.chunks
                ],
                fallback_used=result.fallback_used,
                processed_by=acting_user_id,
            )
            completed = self._transition(
                task_id,
                TaskStatus.PROCESSING,
                TaskStatus.COMPLETE,
                response=result.text,
                processing_metadata=metadata.model_dump(mode="json"),
            )
        except asyncio.CancelledError:
            self._fail(task_id, "Processing was cancelled")
            raise
        except Exception as e:
            logger.error("Task %s failed: %s", task_id, e, exc_info=not isinstance(e, MindOpsError))
            self._fail(task_id, getattr(e, "message", None) or str(e) or type(e).__name__)
            raise

        if not completed:
            raise TaskStateError(f"Task {task_id} left processing before it completed")
        return self.get(task_id)

    def _fail(self, task_id: str, message: str) -> None:
        self._transition(task_id, TaskStatus.PROCESSING, TaskStatus.FAILED, error_message=message)

    async def process_pending(
        self,
        acting_user_id: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> List[CollaborationTask]:
        """
        Process one batch of pending tasks, highest priority then oldest first.

        Each task runs on behalf of its target's owner. When
        ``acting_user_id`` is given only that user's targets are processed.
        """
        batch = self.list_pending(acting_user_id, limit=batch_size or self.batch_size)
        logger.info("Worker picked %d pending task(s)", len(batch))

        processed = []
        for task, owner_id in batch:
            try:
                processed.append(await self.process_task(task.id, owner_id))
            except TaskStateError as e:
                logger.info("Skipping task %s: %s", task.id, e)
            except MindOpsError:
                processed.append(self.get(task.id))
        return processed

    # ------------------------------------------------------------------
    # Listings and requester-side operations
    # ------------------------------------------------------------------

    def list_pending(
        self,
        owner_user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[CollaborationTask, str]]:
        """Pending tasks with their target owner id, in processing order."""
        stmt = (
            select(CollaborationTask, MindOp.user_id)
            .join(MindOp, MindOp.id == CollaborationTask.target_mindop_id)
            .where(CollaborationTask.status == TaskStatus.PENDING.value)
            .order_by(_PRIORITY_RANK.desc(), CollaborationTask.created_at.asc())
        )
        if owner_user_id:
            stmt = stmt.where(MindOp.user_id == owner_user_id)
        if limit:
            stmt = stmt.limit(limit)
        with self.db.session() as s:
            return [(task, owner) for task, owner in s.execute(stmt).all()]

    def list_as_requester(
        self,
        requester_user_id: str,
        status: Optional[TaskStatus] = None,
        task_ids: Optional[List[str]] = None,
    ) -> List[CollaborationTask]:
        stmt = select(CollaborationTask).where(
            CollaborationTask.requester_user_id == requester_user_id
        )
        if status is not None:
            stmt = stmt.where(CollaborationTask.status == TaskStatus(status).value)
        if task_ids is not None:
            stmt = stmt.where(CollaborationTask.id.in_(task_ids))
        with self.db.session() as s:
            return list(s.scalars(stmt.order_by(CollaborationTask.created_at.desc())))

    def list_as_target(self, owner_user_id: str) -> List[CollaborationTask]:
        with self.db.session() as s:
            return list(s.scalars(
                select(CollaborationTask)
                .join(MindOp, MindOp.id == CollaborationTask.target_mindop_id)
                .where(MindOp.user_id == owner_user_id)
                .order_by(CollaborationTask.created_at.desc())
            ))

    def mark_consumed(self, task_id: str, requester_user_id: str) -> bool:
        """
        Mark a complete task as surfaced to the requester.

        Returns False when it was already consumed.
        """
        task = self.get(task_id)
        if task.requester_user_id != requester_user_id:
            raise AuthorizationError("Only the requester can consume this task")
        if task.status == TaskStatus.CONSUMED.value:
            return False
        if task.status != TaskStatus.COMPLETE.value:
            raise TaskStateError(f"Task {task_id} is {task.status}, expected complete")
        return self._transition(task_id, TaskStatus.COMPLETE, TaskStatus.CONSUMED)

    def delete_task(self, task_id: str, requester_user_id: str) -> None:
        task = self.get(task_id)
        if task.requester_user_id != requester_user_id:
            raise AuthorizationError("Only the requester can delete this task")
        if task.status == TaskStatus.PROCESSING.value:
            raise TaskStateError("Cannot delete a task while it is processing")

        with self.db.session() as s:
            row = s.get(CollaborationTask, task_id)
            if row is not None:
                s.delete(row)
        logger.info("Task %s deleted by requester", task_id)
