"""
Tests for connections and the collaboration task engine

State machine legality, the authorization gate and claim semantics.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from mindops.collaboration.tasks import ALLOWED_TRANSITIONS
from mindops.common.errors import (
    AuthorizationError,
    ConnectionRequiredError,
    GenerationError,
    InputValidationError,
    TaskStateError,
)
from mindops.common.models import CollaborationTask, utcnow
from mindops.common.schemas import FollowStatus, TaskPriority, TaskStatus


@pytest.fixture
def target(service, sales_csv):
    report = service.ingest("owner", "sales.csv", sales_csv)
    return service.workspaces.get(report.mindop_id)


@pytest.fixture
def approved(service, target):
    follow = service.connections.request_follow("requester", target.id)
    return service.connections.approve(follow.id, "owner")


class TestConnections:
    def test_request_is_pending(self, service, target):
        follow = service.connections.request_follow("requester", target.id)

        assert follow.status == FollowStatus.PENDING.value
        assert [f.id for f in service.connections.list_pending("owner")] == [follow.id]

    def test_duplicate_request_returns_existing(self, service, target):
        first = service.connections.request_follow("requester", target.id)
        second = service.connections.request_follow("requester", target.id)
        assert first.id == second.id

    def test_self_follow_rejected(self, service, target):
        with pytest.raises(InputValidationError):
            service.connections.request_follow("owner", target.id)

    def test_only_target_owner_can_approve(self, service, target):
        follow = service.connections.request_follow("requester", target.id)

        with pytest.raises(AuthorizationError):
            service.connections.approve(follow.id, "requester")
        assert not service.connections.is_approved("requester", target.id)

    def test_approve_and_reject(self, service, target):
        follow = service.connections.request_follow("requester", target.id)

        service.connections.approve(follow.id, "owner")
        assert service.connections.is_approved("requester", target.id)
        assert [f.id for f in service.connections.list_approved("requester")] == [follow.id]

        service.connections.reject(follow.id, "owner")
        assert not service.connections.is_approved("requester", target.id)

    def test_rejected_request_can_be_reopened(self, service, target):
        follow = service.connections.request_follow("requester", target.id)
        service.connections.reject(follow.id, "owner")

        again = service.connections.request_follow("requester", target.id)

        assert again.id == follow.id
        assert again.status == FollowStatus.PENDING.value


class TestTaskCreation:
    def test_requires_approved_connection(self, service, target):
        with pytest.raises(ConnectionRequiredError):
            service.tasks.create_task("requester", target.id, "How many widgets?")

        follow = service.connections.request_follow("requester", target.id)
        with pytest.raises(ConnectionRequiredError):
            service.tasks.create_task("requester", target.id, "How many widgets?")

        service.connections.approve(follow.id, "owner")
        task = service.tasks.create_task("requester", target.id, "How many widgets?")

        assert task.status == TaskStatus.PENDING.value
        assert task.response is None

    def test_empty_query_rejected(self, service, target, approved):
        with pytest.raises(InputValidationError):
            service.tasks.create_task("requester", target.id, "   ")


class TestTaskProcessing:
    @pytest.mark.asyncio
    async def test_pending_to_complete(self, service, target, approved, llm):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        done = await service.tasks.process_task(task.id, "owner")

        assert done.status == TaskStatus.COMPLETE.value
        assert done.response == llm.generate.return_value
        assert done.error_message is None
        assert done.processing_metadata["chunks_found"] == 1
        assert done.processing_metadata["chunks_used"][0]["source_csv_name"] == "sales.csv"
        assert done.processing_metadata["processed_by"] == "owner"

    @pytest.mark.asyncio
    async def test_processing_uses_no_history(self, service, target, approved, llm):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        await service.tasks.process_task(task.id, "owner")

        prompt = llm.generate.call_args[0][0]
        assert "Recent conversation:\n(none)" in prompt

    @pytest.mark.asyncio
    async def test_reprocessing_rejected_and_status_unchanged(self, service, target, approved):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")
        await service.tasks.process_task(task.id, "owner")

        with pytest.raises(TaskStateError):
            await service.tasks.process_task(task.id, "owner")

        assert service.tasks.get(task.id).status == TaskStatus.COMPLETE.value

    @pytest.mark.asyncio
    async def test_non_owner_cannot_process(self, service, target, approved, llm):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        with pytest.raises(AuthorizationError):
            await service.tasks.process_task(task.id, "requester")

        assert service.tasks.get(task.id).status == TaskStatus.PENDING.value
        llm.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_generation_failure_marks_failed(self, service, target, approved, llm):
        llm.generate.side_effect = RuntimeError("model overloaded")
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        with pytest.raises(GenerationError):
            await service.tasks.process_task(task.id, "owner")

        failed = service.tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED.value
        assert "model overloaded" in failed.error_message
        assert failed.response is None

    @pytest.mark.asyncio
    async def test_completion_write_failure_marks_failed(
        self, service, target, approved, monkeypatch
    ):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")
        transition = service.tasks._transition

        def flaky_transition(task_id, from_status, to_status, **fields):
            if to_status == TaskStatus.COMPLETE:
                raise SQLAlchemyError("disk I/O error")
            return transition(task_id, from_status, to_status, **fields)

        monkeypatch.setattr(service.tasks, "_transition", flaky_transition)

        with pytest.raises(SQLAlchemyError):
            await service.tasks.process_task(task.id, "owner")

        failed = service.tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED.value
        assert "disk I/O error" in failed.error_message

    @pytest.mark.asyncio
    async def test_completion_lost_to_another_writer(self, service, target, approved, monkeypatch):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")
        transition = service.tasks._transition

        def lost_race(task_id, from_status, to_status, **fields):
            if to_status == TaskStatus.COMPLETE:
                return False
            return transition(task_id, from_status, to_status, **fields)

        monkeypatch.setattr(service.tasks, "_transition", lost_race)

        with pytest.raises(TaskStateError):
            await service.tasks.process_task(task.id, "owner")

    def test_claim_is_compare_and_set(self, service, target, approved):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        assert service.tasks._transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)
        assert not service.tasks._transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)
        assert service.tasks.get(task.id).status == TaskStatus.PROCESSING.value

    def test_backward_transitions_are_illegal(self, service):
        for targets in ALLOWED_TRANSITIONS.values():
            assert TaskStatus.PENDING not in targets
        with pytest.raises(TaskStateError):
            service.tasks._transition("any", TaskStatus.COMPLETE, TaskStatus.PROCESSING)
        with pytest.raises(TaskStateError):
            service.tasks._transition("any", TaskStatus.FAILED, TaskStatus.COMPLETE)

    @pytest.mark.asyncio
    async def test_worker_batch_priority_then_age(self, service, target, approved):
        low = service.tasks.create_task("requester", target.id, "low one", TaskPriority.LOW)
        normal = service.tasks.create_task("requester", target.id, "normal one")
        high = service.tasks.create_task("requester", target.id, "high one", TaskPriority.HIGH)

        order = [t.id for t, _ in service.tasks.list_pending()]
        assert order == [high.id, normal.id, low.id]

        processed = await service.tasks.process_pending(batch_size=2)

        assert [t.id for t in processed] == [high.id, normal.id]
        assert service.tasks.get(low.id).status == TaskStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_worker_records_failures_and_continues(self, service, target, approved, llm):
        llm.generate.side_effect = [RuntimeError("boom"), RuntimeError("boom"), "second answer"]
        service.tasks.create_task("requester", target.id, "first")
        service.tasks.create_task("requester", target.id, "second")

        processed = await service.tasks.process_pending()

        assert sorted(t.status for t in processed) == ["complete", "failed"]
        assert service.tasks.list_pending() == []


class TestTaskListings:
    def test_requester_and_target_views(self, service, target, approved):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        assert [t.id for t in service.tasks.list_as_requester("requester")] == [task.id]
        assert [t.id for t in service.tasks.list_as_target("owner")] == [task.id]
        assert service.tasks.list_as_target("requester") == []

    def test_timestamps_are_timezone_aware_utc(self, service, target, approved):
        before = utcnow()
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        assert task.created_at.tzinfo is not None
        assert task.created_at.utcoffset() == timedelta(0)
        assert before <= task.created_at <= utcnow()
        assert CollaborationTask.__table__.c.created_at.type.timezone

    def test_requester_can_delete(self, service, db, target, approved):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        with pytest.raises(AuthorizationError):
            service.tasks.delete_task(task.id, "owner")
        service.tasks.delete_task(task.id, "requester")

        with db.session() as s:
            assert s.scalar(select(func.count(CollaborationTask.id))) == 0

    @pytest.mark.asyncio
    async def test_mark_consumed_is_idempotent(self, service, target, approved):
        task = service.tasks.create_task("requester", target.id, "How many Widget A?")

        with pytest.raises(TaskStateError):
            service.tasks.mark_consumed(task.id, "requester")

        await service.tasks.process_task(task.id, "owner")

        assert service.tasks.mark_consumed(task.id, "requester") is True
        assert service.tasks.mark_consumed(task.id, "requester") is False
        assert service.tasks.get(task.id).status == TaskStatus.CONSUMED.value
