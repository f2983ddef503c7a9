"""
Agent Registry - Agent registration, status tracking and health sweeps

Owns agent records in the store. Status changes are written with
compare-and-swap expectations instead of locks, so concurrent triggers
(a heartbeat racing a health sweep, two assignments racing for one agent)
resolve to a single winner.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agents.shared.schemas import (
    Agent,
    AgentCapability,
    AgentConfig,
    AgentStatus,
    TaskType,
    TERMINAL_TASK_STATUSES,
    utcnow,
)
from orchestrator.errors import InvalidTransitionError, NotFoundError, ValidationError
from orchestrator.metrics import CounterStore
from orchestrator.store import Store

logger = logging.getLogger(__name__)

DisconnectHandler = Callable[[Agent], Awaitable[None]]

DEFAULT_AGENTS = [
    (
        "SOFIA-Master",
        [
            AgentCapability.FULLSTACK,
            AgentCapability.CODE,
            AgentCapability.BUGFIX,
            AgentCapability.REVIEW,
            AgentCapability.DEPLOY,
            AgentCapability.DOCUMENTATION,
            AgentCapability.RESEARCH,
        ],
        AgentConfig(max_concurrent_tasks=3),
    ),
    (
        "Code-Expert",
        [AgentCapability.CODE, AgentCapability.BUGFIX, AgentCapability.FULLSTACK],
        AgentConfig(
            max_concurrent_tasks=2,
            accepted_task_types=[TaskType.CODE, TaskType.BUGFIX],
        ),
    ),
    (
        "Review-Guardian",
        [AgentCapability.REVIEW, AgentCapability.DOCUMENTATION],
        AgentConfig(
            max_concurrent_tasks=5,
            accepted_task_types=[TaskType.REVIEW, TaskType.DOCUMENTATION],
        ),
    ),
    (
        "Deploy-Engineer",
        [AgentCapability.DEPLOY, AgentCapability.MAINTENANCE],
        AgentConfig(
            max_concurrent_tasks=1,
            accepted_task_types=[TaskType.DEPLOY, TaskType.MAINTENANCE],
        ),
    ),
]


class AgentRegistry:
    """
    Registry of worker agents backed by the record store.

    The task orchestrator sets ``disconnect_handler`` so that health sweeps
    and deregistration can hand a lost agent's task back to the queue.
    """

    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = utcnow,
        counters: Optional[CounterStore] = None
    ):
        """
        Initialize registry.

        Args:
            store: Record store holding agents, tasks and sessions
            clock: Returns the current UTC time (replaced in tests)
            counters: Counter store shared with the orchestrator
        """
        self.store = store
        self.clock = clock
        self.counters = counters or CounterStore()
        self.disconnect_handler: Optional[DisconnectHandler] = None

    async def register(
        self,
        name: str,
        capabilities: List[AgentCapability],
        config: Optional[AgentConfig] = None
    ) -> Agent:
        """
        Register a new idle agent.

        Args:
            name: Display name (non-empty)
            capabilities: At least one capability
            config: Optional agent config, defaults applied otherwise

        Returns:
            The stored Agent record

        Raises:
            ValidationError: If the name or capabilities are empty
        """
        errors = []
        if not name or not name.strip():
            errors.append("Agent name is required")
        if not capabilities:
            errors.append("At least one capability is required")
        if errors:
            raise ValidationError(errors)

        now = self.clock()
        agent = Agent(
            name=name.strip(),
            capabilities=list(dict.fromkeys(AgentCapability(c) for c in capabilities)),
            config=config or AgentConfig(),
            last_active_at=now,
            created_at=now,
        )
        agent = await self.store.create_agent(agent)
        self.counters.increment("agents.registered")

        logger.info(
            f"Agent registered: {agent.id} ({agent.name}) "
            f"capabilities={[c.value for c in agent.capabilities]}"
        )
        return agent

    async def get_agent(self, agent_id: str) -> Agent:
        return await self.store.get_agent(agent_id)

    async def list_agents(self, status: Any = None) -> List[Agent]:
        agents = await self.store.list_agents(status=status)
        return sorted(agents, key=lambda agent: agent.id)

    async def list_available_agents(self) -> List[Agent]:
        """Idle agents, the only ones eligible for automatic assignment"""
        return await self.list_agents(status=AgentStatus.IDLE)

    async def set_status(
        self,
        agent_id: str,
        status: AgentStatus,
        current_task_id: Optional[str] = None,
        current_session_id: Optional[str] = None
    ) -> Agent:
        """
        Set an agent's status and refresh its last activity time.

        Any status other than busy clears the current task and session.
        Offline can only be reached through the health sweep.

        Raises:
            ValidationError: If busy is requested without a task id
            InvalidTransitionError: If offline is requested
            NotFoundError: If the agent does not exist
        """
        status = AgentStatus(status)
        if status == AgentStatus.OFFLINE:
            raise InvalidTransitionError("Agents are marked offline by the health sweep only")
        if status == AgentStatus.BUSY and not current_task_id:
            raise ValidationError(["A busy agent requires a current task id"])

        changes: Dict[str, Any] = {
            "status": status,
            "last_active_at": self.clock(),
            "current_task_id": current_task_id if status == AgentStatus.BUSY else None,
            "current_session_id": current_session_id if status == AgentStatus.BUSY else None,
        }
        agent = await self.store.update_agent(agent_id, changes)
        logger.info(f"Agent {agent_id} status set to {status.value}")
        return agent

    async def claim(self, agent_id: str, task_id: str) -> Optional[Agent]:
        """
        Mark an idle agent busy with a task.

        Returns:
            The updated agent, or None if the agent was no longer idle
        """
        agent = await self.store.update_agent(
            agent_id,
            {
                "status": AgentStatus.BUSY,
                "current_task_id": task_id,
                "current_session_id": None,
                "last_active_at": self.clock(),
            },
            expected={"status": AgentStatus.IDLE},
        )
        if agent is None:
            logger.info(f"Agent {agent_id} was no longer idle, claim for task {task_id} lost")
        return agent

    async def release(self, agent_id: str, task_id: str) -> Optional[Agent]:
        """
        Return a busy agent to idle, only while it still holds ``task_id``.

        Returns:
            The updated agent, or None if the agent moved on or is gone
        """
        try:
            agent = await self.store.update_agent(
                agent_id,
                {
                    "status": AgentStatus.IDLE,
                    "current_task_id": None,
                    "current_session_id": None,
                    "last_active_at": self.clock(),
                },
                expected={"status": AgentStatus.BUSY, "current_task_id": task_id},
            )
        except NotFoundError:
            logger.info(f"Agent {agent_id} no longer registered, nothing to release")
            return None
        return agent

    async def attach_session(self, agent_id: str, task_id: str, session_id: str) -> Optional[Agent]:
        return await self.store.update_agent(
            agent_id,
            {"current_session_id": session_id, "last_active_at": self.clock()},
            expected={"status": AgentStatus.BUSY, "current_task_id": task_id},
        )

    async def record_outcome(self, agent_id: str, duration_ms: float, success: bool) -> Agent:
        """
        Update an agent's completion counters and running averages.

        Args:
            agent_id: Agent that ran the task
            duration_ms: Elapsed task time in milliseconds
            success: Whether the task completed successfully

        Returns:
            Updated Agent record
        """
        agent = await self.store.get_agent(agent_id)

        completed = agent.total_tasks_completed + (1 if success else 0)
        failed = agent.total_tasks_failed + (0 if success else 1)
        total = completed + failed

        average = (agent.average_task_duration_ms * (total - 1) + max(0.0, duration_ms)) / total
        success_rate = completed / total * 100.0

        updated = await self.store.update_agent(
            agent_id,
            {
                "total_tasks_completed": completed,
                "total_tasks_failed": failed,
                "average_task_duration_ms": average,
                "success_rate": success_rate,
            },
        )
        logger.info(
            f"Agent {agent_id} outcome recorded: success={success}, "
            f"duration={duration_ms:.0f}ms, success_rate={success_rate:.1f}%"
        )
        return updated

    async def heartbeat(self, agent_id: str) -> Agent:
        """Refresh an agent's last activity time without touching its status"""
        return await self.store.update_agent(agent_id, {"last_active_at": self.clock()})

    async def health_sweep(self, threshold_ms: float) -> List[Agent]:
        """
        Mark agents offline when they have been silent longer than the threshold.

        Agents holding a task are handed to the disconnect handler so the
        task returns to the queue. A heartbeat that lands between the read
        and the write keeps the agent online.

        Args:
            threshold_ms: Allowed silence in milliseconds

        Returns:
            Agents marked offline by this sweep (as they were before the change)
        """
        now = self.clock()
        offline = []

        for agent in await self.store.list_agents():
            if agent.status == AgentStatus.OFFLINE:
                continue

            silent_ms = (now - agent.last_active_at).total_seconds() * 1000.0
            if silent_ms <= threshold_ms:
                continue

            try:
                updated = await self.store.update_agent(
                    agent.id,
                    {
                        "status": AgentStatus.OFFLINE,
                        "current_task_id": None,
                        "current_session_id": None,
                    },
                    expected={
                        "status": agent.status,
                        "last_active_at": agent.last_active_at,
                    },
                )
                if updated is None:
                    logger.info(f"Agent {agent.id} changed during health sweep, left online")
                    continue

                offline.append(agent)
                self.counters.increment("agents.offline")
                logger.warning(
                    f"Agent {agent.id} ({agent.name}) marked offline after "
                    f"{silent_ms / 1000.0:.0f}s without activity"
                )

                if agent.current_task_id:
                    await self._dispatch_disconnect(agent)
            except Exception as e:
                logger.error(f"Health sweep failed for agent {agent.id}: {e}", exc_info=True)

        return offline

    async def deregister(self, agent_id: str) -> None:
        """
        Remove an agent, returning its task to the queue first.

        Raises:
            NotFoundError: If the agent does not exist
        """
        agent = await self.store.get_agent(agent_id)
        if agent.current_task_id:
            await self._dispatch_disconnect(agent)

        await self.store.delete_agent(agent_id)
        self.counters.increment("agents.deregistered")
        logger.info(f"Agent deregistered: {agent_id} ({agent.name})")

    async def _dispatch_disconnect(self, agent: Agent) -> None:
        if self.disconnect_handler is None:
            logger.warning(f"No disconnect handler set, task {agent.current_task_id} left as is")
            return
        try:
            await self.disconnect_handler(agent)
        except Exception as e:
            logger.error(
                f"Disconnect recovery failed for agent {agent.id} "
                f"(task {agent.current_task_id}): {e}",
                exc_info=True
            )

    async def get_agent_metrics(self, agent_id: str) -> Dict[str, Any]:
        """
        Performance summary for one agent.

        Returns:
            Dict with total_tasks, success_rate, average_task_duration_ms,
            tasks_by_type and the ten most recent sessions
        """
        agent = await self.store.get_agent(agent_id)

        finished = await self.store.list_tasks(status=TERMINAL_TASK_STATUSES)
        tasks_by_type = Counter(
            task.type.value for task in finished
            if task.result is not None and task.result.agent_id == agent_id
        )
        sessions = await self.store.list_sessions(agent_id=agent_id, limit=10)

        return {
            "agent_id": agent.id,
            "total_tasks": agent.total_tasks,
            "success_rate": agent.success_rate,
            "average_task_duration_ms": agent.average_task_duration_ms,
            "tasks_by_type": dict(sorted(tasks_by_type.items())),
            "recent_sessions": [
                session.model_dump(mode="json", exclude={"logs"}) for session in sessions
            ],
        }

    async def get_system_stats(self) -> Dict[str, int]:
        agents = await self.store.list_agents()
        by_status = Counter(agent.status for agent in agents)
        return {
            "total": len(agents),
            "online": len(agents) - by_status[AgentStatus.OFFLINE],
            "busy": by_status[AgentStatus.BUSY],
            "idle": by_status[AgentStatus.IDLE],
            "offline": by_status[AgentStatus.OFFLINE],
            "error": by_status[AgentStatus.ERROR],
        }

    async def initialize_default_agents(self) -> List[Agent]:
        """
        Seed the default agent pool when no agents are registered.

        Returns:
            The agents created (empty if the registry already had agents)
        """
        existing = await self.store.list_agents()
        if existing:
            logger.info(f"Agents already initialized ({len(existing)} registered)")
            return []

        created = []
        for name, capabilities, config in DEFAULT_AGENTS:
            created.append(await self.register(name, capabilities, config.model_copy(deep=True)))

        logger.info(f"Default agents initialized: {[agent.name for agent in created]}")
        return created
