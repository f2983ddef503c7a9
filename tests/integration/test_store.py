"""
Tests for the InMemoryStore

Compare-and-swap updates, filters, copy isolation and session log capping.
"""

from datetime import datetime, timedelta, UTC

import pytest

from agents.shared.schemas import (
    Agent,
    AgentCapability,
    AgentStatus,
    Learning,
    Session,
    SessionLog,
    SessionStatus,
    Task,
    TaskStatus,
    TaskType,
)
from orchestrator.errors import NotFoundError, StoreError
from orchestrator.store import InMemoryStore

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def make_task(**fields):
    defaults = dict(title="Task title", description="A long enough description", type=TaskType.CODE)
    defaults.update(fields)
    return Task(**defaults)


@pytest.mark.asyncio
class TestTaskRecords:
    """Test task storage"""

    async def test_create_and_get(self, store):
        task = await store.create_task(make_task())
        fetched = await store.get_task(task.id)
        assert fetched == task

    async def test_get_unknown_task(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.get_task("task-missing")
        assert exc_info.value.kind == "task"
        assert "task-missing" in str(exc_info.value)

    async def test_returned_records_are_copies(self, store):
        task = await store.create_task(make_task())
        task.title = "mutated"
        assert (await store.get_task(task.id)).title == "Task title"

    async def test_update_without_expectation(self, store):
        task = await store.create_task(make_task())
        updated = await store.update_task(task.id, {"progress": 40})
        assert updated.progress == 40

    async def test_update_with_matching_expectation(self, store):
        task = await store.create_task(make_task())
        updated = await store.update_task(
            task.id, {"status": TaskStatus.ASSIGNED}, expected={"status": TaskStatus.PENDING}
        )
        assert updated.status == TaskStatus.ASSIGNED

    async def test_update_with_stale_expectation_changes_nothing(self, store):
        task = await store.create_task(make_task())
        result = await store.update_task(
            task.id, {"status": TaskStatus.COMPLETED}, expected={"status": TaskStatus.IN_PROGRESS}
        )
        assert result is None
        assert (await store.get_task(task.id)).status == TaskStatus.PENDING

    async def test_expectation_with_set_means_membership(self, store):
        task = await store.create_task(make_task(status=TaskStatus.ASSIGNED, assigned_to="agent-1"))
        updated = await store.update_task(
            task.id,
            {"status": TaskStatus.PENDING, "assigned_to": None},
            expected={"status": {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS}},
        )
        assert updated.status == TaskStatus.PENDING

    async def test_update_unknown_task(self, store):
        with pytest.raises(NotFoundError):
            await store.update_task("task-missing", {"progress": 1})

    async def test_write_to_unknown_field_is_rejected(self, store):
        task = await store.create_task(make_task())
        with pytest.raises(StoreError, match="unknown fields owner"):
            await store.update_task(task.id, {"owner": "agent-1"})
        with pytest.raises(StoreError, match="unknown fields state"):
            await store.update_task(task.id, {"progress": 5}, expected={"state": "pending"})
        assert (await store.get_task(task.id)).progress == 0

    async def test_list_filters_and_order(self, store):
        old = await store.create_task(make_task(created_at=T0))
        new = await store.create_task(make_task(created_at=T0 + timedelta(hours=1), type=TaskType.DEPLOY))
        done = await store.create_task(
            make_task(created_at=T0 + timedelta(hours=2), status=TaskStatus.COMPLETED)
        )

        assert [t.id for t in await store.list_tasks()] == [done.id, new.id, old.id]
        assert [t.id for t in await store.list_tasks(status=TaskStatus.PENDING)] == [new.id, old.id]
        assert [t.id for t in await store.list_tasks(task_type=TaskType.DEPLOY)] == [new.id]
        assert [t.id for t in await store.list_tasks(created_after=T0 + timedelta(minutes=30))] == [done.id, new.id]
        assert [t.id for t in await store.list_tasks(created_before=T0 + timedelta(minutes=30))] == [old.id]
        assert len(await store.list_tasks(limit=1)) == 1


@pytest.mark.asyncio
class TestAgentRecords:
    """Test agent storage"""

    async def test_list_by_status_and_delete(self, store):
        agent = await store.create_agent(Agent(name="A", capabilities=[AgentCapability.CODE]))
        assert [a.id for a in await store.list_agents(status=AgentStatus.IDLE)] == [agent.id]

        await store.delete_agent(agent.id)
        assert await store.list_agents() == []
        with pytest.raises(NotFoundError):
            await store.delete_agent(agent.id)


@pytest.mark.asyncio
class TestSessionRecords:
    """Test session storage"""

    async def test_log_is_capped_dropping_oldest(self):
        store = InMemoryStore(session_log_limit=3)
        session = await store.create_session(Session(task_id="task-1", agent_id="agent-1"))

        for i in range(5):
            await store.append_session_log(session.id, SessionLog(message=f"entry {i}"))

        logs = (await store.get_session(session.id)).logs
        assert [entry.message for entry in logs] == ["entry 2", "entry 3", "entry 4"]

    async def test_list_sessions_filters(self, store):
        first = await store.create_session(Session(task_id="task-1", agent_id="agent-1", started_at=T0))
        await store.create_session(
            Session(task_id="task-2", agent_id="agent-2", started_at=T0 + timedelta(hours=1))
        )

        assert [s.id for s in await store.list_sessions(task_id="task-1")] == [first.id]
        assert [s.id for s in await store.list_sessions(agent_id="agent-1")] == [first.id]
        assert len(await store.list_sessions(status=SessionStatus.STARTING)) == 2

    async def test_cleanup_removes_only_old_terminal_sessions(self, store):
        old_done = await store.create_session(
            Session(task_id="t1", agent_id="a1", started_at=T0, status=SessionStatus.COMPLETED)
        )
        old_running = await store.create_session(
            Session(task_id="t2", agent_id="a1", started_at=T0, status=SessionStatus.RUNNING)
        )
        recent_done = await store.create_session(
            Session(task_id="t3", agent_id="a1", started_at=T0 + timedelta(days=40), status=SessionStatus.FAILED)
        )

        deleted = await store.cleanup_sessions(timedelta(days=30), now=T0 + timedelta(days=45))

        assert deleted == 1
        remaining = {s.id for s in await store.list_sessions()}
        assert remaining == {old_running.id, recent_done.id}
        assert old_done.id not in remaining


@pytest.mark.asyncio
class TestLearningRecords:
    """Test learning storage"""

    async def test_list_by_type(self, store):
        await store.create_learning(Learning(task_id="t1", task_type=TaskType.CODE, learnings=["note: a"]))
        await store.create_learning(Learning(task_id="t2", task_type=TaskType.BUGFIX, learnings=["lesson b"]))

        bugfix = await store.list_learnings(task_type=TaskType.BUGFIX)
        assert [learning.task_id for learning in bugfix] == ["t2"]
        assert len(await store.list_learnings()) == 2
