"""
Tests for the Agent Registry

Registration, status changes, claims, outcome statistics, health sweeps
and deregistration.
"""

import pytest

from agents.shared.schemas import (
    AgentCapability,
    AgentConfig,
    AgentStatus,
    Session,
    SessionOutcome,
    SessionStatus,
    Task,
    TaskResult,
    TaskStatus,
    TaskType,
)
from orchestrator.errors import InvalidTransitionError, NotFoundError, ValidationError
from orchestrator.registry import DEFAULT_AGENTS


@pytest.mark.asyncio
class TestRegistration:
    """Test agent registration"""

    async def test_register_creates_idle_agent(self, registry, clock):
        agent = await registry.register("Coder", [AgentCapability.CODE])

        assert agent.id.startswith("agent-")
        assert agent.status == AgentStatus.IDLE
        assert agent.success_rate == 100.0
        assert agent.total_tasks == 0
        assert agent.last_active_at == clock.now
        assert registry.counters.get("agents.registered") == 1

    async def test_duplicate_capabilities_are_collapsed(self, registry):
        agent = await registry.register("Coder", ["code", "code", "review"])
        assert agent.capabilities == [AgentCapability.CODE, AgentCapability.REVIEW]

    async def test_empty_name_and_capabilities_rejected(self, registry, store):
        with pytest.raises(ValidationError) as exc_info:
            await registry.register("  ", [])

        assert len(exc_info.value.errors) == 2
        assert await store.list_agents() == []

    async def test_config_is_kept(self, registry):
        config = AgentConfig(max_concurrent_tasks=3, accepted_task_types=[TaskType.DEPLOY])
        agent = await registry.register("Deployer", ["deploy"], config)
        assert agent.config.max_concurrent_tasks == 3
        assert agent.config.accepted_task_types == [TaskType.DEPLOY]

    async def test_list_agents_sorted_by_id(self, make_agent, registry):
        for name in ("One", "Two", "Three"):
            await make_agent(name)
        ids = [agent.id for agent in await registry.list_agents()]
        assert ids == sorted(ids)

    async def test_unknown_agent(self, registry):
        with pytest.raises(NotFoundError):
            await registry.get_agent("agent-missing")


@pytest.mark.asyncio
class TestStatus:
    """Test explicit status changes"""

    async def test_busy_requires_task_id(self, make_agent, registry):
        agent = await make_agent()
        with pytest.raises(ValidationError):
            await registry.set_status(agent.id, AgentStatus.BUSY)

    async def test_offline_only_through_sweep(self, make_agent, registry):
        agent = await make_agent()
        with pytest.raises(InvalidTransitionError):
            await registry.set_status(agent.id, AgentStatus.OFFLINE)

    async def test_idle_clears_current_task(self, make_agent, registry):
        agent = await make_agent()
        await registry.set_status(agent.id, AgentStatus.BUSY, current_task_id="task-1")

        updated = await registry.set_status(agent.id, AgentStatus.IDLE)
        assert updated.current_task_id is None
        assert updated.current_session_id is None

    async def test_set_status_refreshes_activity(self, make_agent, registry, clock):
        agent = await make_agent()
        clock.advance(minutes=3)
        updated = await registry.set_status(agent.id, AgentStatus.ERROR)
        assert updated.last_active_at == clock.now

    async def test_heartbeat_keeps_status(self, make_agent, registry, clock):
        agent = await make_agent()
        await registry.claim(agent.id, "task-1")
        clock.advance(seconds=30)

        updated = await registry.heartbeat(agent.id)
        assert updated.status == AgentStatus.BUSY
        assert updated.last_active_at == clock.now


@pytest.mark.asyncio
class TestClaimRelease:
    """Test compare-and-swap claims"""

    async def test_only_one_claim_wins(self, make_agent, registry):
        agent = await make_agent()

        first = await registry.claim(agent.id, "task-1")
        second = await registry.claim(agent.id, "task-2")

        assert first.current_task_id == "task-1"
        assert second is None
        assert (await registry.get_agent(agent.id)).current_task_id == "task-1"

    async def test_release_requires_matching_task(self, make_agent, registry):
        agent = await make_agent()
        await registry.claim(agent.id, "task-1")

        assert await registry.release(agent.id, "task-other") is None
        released = await registry.release(agent.id, "task-1")
        assert released.status == AgentStatus.IDLE
        assert released.current_task_id is None

    async def test_release_unknown_agent_is_ignored(self, registry):
        assert await registry.release("agent-missing", "task-1") is None

    async def test_attach_session(self, make_agent, registry):
        agent = await make_agent()
        await registry.claim(agent.id, "task-1")

        updated = await registry.attach_session(agent.id, "task-1", "session-1")
        assert updated.current_session_id == "session-1"


@pytest.mark.asyncio
class TestOutcomes:
    """Test completion statistics"""

    async def test_running_average_and_success_rate(self, make_agent, registry):
        agent = await make_agent()

        await registry.record_outcome(agent.id, 1000, success=True)
        await registry.record_outcome(agent.id, 3000, success=True)
        updated = await registry.record_outcome(agent.id, 2000, success=False)

        assert updated.total_tasks_completed == 2
        assert updated.total_tasks_failed == 1
        assert updated.average_task_duration_ms == pytest.approx(2000)
        assert updated.success_rate == pytest.approx(200 / 3)

    async def test_first_failure_drops_rate_to_zero(self, make_agent, registry):
        agent = await make_agent()
        updated = await registry.record_outcome(agent.id, 500, success=False)
        assert updated.success_rate == 0.0


@pytest.mark.asyncio
class TestHealthSweep:
    """Test offline detection"""

    async def test_silent_agents_go_offline(self, make_agent, registry, clock):
        quiet = await make_agent("Quiet")
        chatty = await make_agent("Chatty")

        clock.advance(minutes=6)
        await registry.heartbeat(chatty.id)

        offline = await registry.health_sweep(threshold_ms=5 * 60 * 1000)

        assert [agent.id for agent in offline] == [quiet.id]
        assert (await registry.get_agent(quiet.id)).status == AgentStatus.OFFLINE
        assert (await registry.get_agent(chatty.id)).status == AgentStatus.IDLE
        assert registry.counters.get("agents.offline") == 1

    async def test_agent_within_threshold_stays_online(self, make_agent, registry, clock):
        agent = await make_agent()
        clock.advance(minutes=5)
        assert await registry.health_sweep(threshold_ms=5 * 60 * 1000) == []
        assert (await registry.get_agent(agent.id)).status == AgentStatus.IDLE

    async def test_offline_agents_not_swept_twice(self, make_agent, registry, clock):
        await make_agent()
        clock.advance(minutes=10)
        assert len(await registry.health_sweep(threshold_ms=60_000)) == 1
        assert await registry.health_sweep(threshold_ms=60_000) == []

    async def test_busy_agent_hands_task_to_disconnect_handler(self, make_agent, registry, clock):
        agent = await make_agent()
        await registry.claim(agent.id, "task-1")
        recovered = []

        async def on_disconnect(lost):
            recovered.append(lost.current_task_id)

        registry.disconnect_handler = on_disconnect
        clock.advance(minutes=10)
        await registry.health_sweep(threshold_ms=60_000)

        assert recovered == ["task-1"]
        swept = await registry.get_agent(agent.id)
        assert swept.status == AgentStatus.OFFLINE
        assert swept.current_task_id is None

    async def test_failing_handler_does_not_stop_sweep(self, make_agent, registry, clock):
        first = await make_agent("First")
        second = await make_agent("Second")
        await registry.claim(first.id, "task-1")
        await registry.claim(second.id, "task-2")

        async def on_disconnect(lost):
            raise RuntimeError("recovery exploded")

        registry.disconnect_handler = on_disconnect
        clock.advance(minutes=10)
        offline = await registry.health_sweep(threshold_ms=60_000)

        assert len(offline) == 2

    async def test_completion_during_sweep_keeps_agent_online(
        self, orchestrator, make_agent, registry, store, clock, monkeypatch
    ):
        agent = await make_agent()
        task = await orchestrator.create_task("Add endpoint", "Add a health endpoint to the API", "code")
        started = await orchestrator.assign_task(task.id)
        clock.advance(minutes=10)

        update_agent = store.update_agent
        interleaved = []

        async def update_after_completion(agent_id, changes, expected=None):
            if expected and "last_active_at" in expected and not interleaved:
                interleaved.append(agent_id)
                await orchestrator.complete_task(
                    task.id,
                    started.session_id,
                    SessionOutcome(success=True, status=SessionStatus.COMPLETED, output="done"),
                )
            return await update_agent(agent_id, changes, expected)

        monkeypatch.setattr(store, "update_agent", update_after_completion)

        offline = await registry.health_sweep(threshold_ms=60_000)

        assert interleaved == [agent.id]
        assert offline == []
        swept = await registry.get_agent(agent.id)
        assert swept.status == AgentStatus.IDLE
        assert swept.total_tasks == 1
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.COMPLETED
        assert registry.counters.get("agents.offline") == 0
        assert registry.counters.get("tasks.recovered") == 0

    async def test_heartbeat_during_sweep_keeps_task_running(
        self, orchestrator, make_agent, registry, store, clock, monkeypatch
    ):
        agent = await make_agent()
        task = await orchestrator.create_task("Add endpoint", "Add a health endpoint to the API", "code")
        started = await orchestrator.assign_task(task.id)
        clock.advance(minutes=10)

        update_agent = store.update_agent
        interleaved = []

        async def update_after_heartbeat(agent_id, changes, expected=None):
            if expected and "last_active_at" in expected and not interleaved:
                interleaved.append(agent_id)
                await update_agent(agent_id, {"last_active_at": clock()})
            return await update_agent(agent_id, changes, expected)

        monkeypatch.setattr(store, "update_agent", update_after_heartbeat)

        assert await registry.health_sweep(threshold_ms=60_000) == []

        busy = await registry.get_agent(agent.id)
        assert busy.status == AgentStatus.BUSY
        assert busy.current_task_id == task.id
        running = await orchestrator.get_task(task.id)
        assert running.status == TaskStatus.IN_PROGRESS
        assert running.session_id == started.session_id
        assert registry.counters.get("tasks.recovered") == 0

    async def test_offline_agent_can_come_back(self, make_agent, registry, clock):
        agent = await make_agent()
        clock.advance(minutes=10)
        await registry.health_sweep(threshold_ms=60_000)

        updated = await registry.set_status(agent.id, AgentStatus.IDLE)
        assert updated.status == AgentStatus.IDLE


@pytest.mark.asyncio
class TestDeregistration:
    """Test agent removal"""

    async def test_deregister_recovers_task_first(self, make_agent, registry, store):
        agent = await make_agent()
        await registry.claim(agent.id, "task-1")
        seen = []

        async def on_disconnect(lost):
            seen.append(lost.id)
            # The record still exists while recovery runs
            await store.get_agent(lost.id)

        registry.disconnect_handler = on_disconnect
        await registry.deregister(agent.id)

        assert seen == [agent.id]
        with pytest.raises(NotFoundError):
            await registry.get_agent(agent.id)
        assert registry.counters.get("agents.deregistered") == 1

    async def test_deregister_unknown_agent(self, registry):
        with pytest.raises(NotFoundError):
            await registry.deregister("agent-missing")


@pytest.mark.asyncio
class TestMetricsAndStats:
    """Test reporting queries"""

    async def test_agent_metrics(self, make_agent, registry, store):
        agent = await make_agent()
        await registry.record_outcome(agent.id, 1200, success=True)

        for task_type in (TaskType.CODE, TaskType.CODE, TaskType.BUGFIX):
            await store.create_task(Task(
                title="Finished",
                description="A finished piece of work",
                type=task_type,
                status=TaskStatus.COMPLETED,
                result=TaskResult(success=True, summary="ok", agent_id=agent.id),
            ))
        await store.create_task(Task(
            title="Other agent",
            description="Done by somebody else",
            type=TaskType.DEPLOY,
            status=TaskStatus.COMPLETED,
            result=TaskResult(success=True, summary="ok", agent_id="agent-other"),
        ))
        for _ in range(12):
            await store.create_session(Session(task_id="task-x", agent_id=agent.id))

        metrics = await registry.get_agent_metrics(agent.id)

        assert metrics["total_tasks"] == 1
        assert metrics["average_task_duration_ms"] == pytest.approx(1200)
        assert metrics["tasks_by_type"] == {"bugfix": 1, "code": 2}
        assert len(metrics["recent_sessions"]) == 10
        assert "logs" not in metrics["recent_sessions"][0]

    async def test_system_stats(self, make_agent, registry, clock):
        busy = await make_agent("Busy")
        await make_agent("Idle")
        await registry.claim(busy.id, "task-1")

        stats = await registry.get_system_stats()
        assert stats == {"total": 2, "online": 2, "busy": 1, "idle": 1, "offline": 0, "error": 0}

    async def test_default_agents_seeded_once(self, registry):
        created = await registry.initialize_default_agents()
        assert [agent.name for agent in created] == [name for name, _, _ in DEFAULT_AGENTS]
        assert await registry.initialize_default_agents() == []
        assert len(await registry.list_agents()) == len(DEFAULT_AGENTS)
