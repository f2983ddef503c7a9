"""
Task Orchestrator - Task lifecycle, assignment and recovery

Drives tasks through pending -> assigned -> in_progress -> completed/failed,
with cancellation from any non-terminal status and disconnect recovery from
assigned/in_progress back to pending.

No locks are held around task or agent records. Every mutation re-reads the
record and writes with a compare-and-swap expectation on its status (and
session id), so a lost race leaves the winner's state untouched.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from agents.shared.schemas import (
    ACTIVE_TASK_STATUSES,
    Agent,
    AgentStatus,
    Learning,
    NON_TERMINAL_TASK_STATUSES,
    SessionOutcome,
    Task,
    TaskEvent,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    utcnow,
)
from orchestrator.errors import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from orchestrator.matcher import priority_score, select_best_agent
from orchestrator.metrics import CounterStore
from orchestrator.registry import AgentRegistry
from orchestrator.session_monitor import SessionMonitor
from orchestrator.store import Store

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 3
MIN_DESCRIPTION_LENGTH = 10
INITIAL_PROGRESS = 10
PROGRESS_STEP = 10
MAX_RUNNING_PROGRESS = 90
LEARNING_MARKERS = ("lesson", "note:", "learning:")

TASK_OPTION_FIELDS = frozenset({
    "created_by",
    "repository",
    "branch",
    "file_paths",
    "related_issues",
    "estimated_hours",
    "tags",
    "sub_agent_config",
})


def extract_learnings(output: Optional[str]) -> List[str]:
    """Lines of sub-agent output that mention a lesson, note or learning"""
    if not output:
        return []
    return [
        line.strip() for line in output.splitlines()
        if line.strip() and any(marker in line.lower() for marker in LEARNING_MARKERS)
    ]


def validate_task_fields(title: Any, description: Any, task_type: Any, priority: Any) -> List[str]:
    """
    Check the required task fields.

    Returns:
        Every violated rule (empty when the fields are valid)
    """
    errors = []
    if not isinstance(title, str) or len(title.strip()) < MIN_TITLE_LENGTH:
        errors.append(f"Title must be at least {MIN_TITLE_LENGTH} characters")
    if not isinstance(description, str) or len(description.strip()) < MIN_DESCRIPTION_LENGTH:
        errors.append(f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters")

    if not task_type:
        errors.append("Task type is required")
    else:
        try:
            TaskType(task_type)
        except ValueError:
            errors.append(f"Unknown task type: {task_type}")

    if not priority:
        errors.append("Priority is required")
    else:
        try:
            TaskPriority(priority)
        except ValueError:
            errors.append(f"Unknown priority: {priority}")

    return errors


class TaskOrchestrator:
    """
    Coordinates tasks, agents and sessions.

    Wires itself into the registry (disconnect recovery) and the session
    monitor (completion and progress callbacks) on construction.
    """

    def __init__(
        self,
        store: Store,
        registry: AgentRegistry,
        monitor: SessionMonitor,
        publisher=None,
        counters: Optional[CounterStore] = None,
        clock=utcnow
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Record store
            registry: Agent registry sharing the same store
            monitor: Session monitor for spawning and polling sessions
            publisher: Optional lifecycle event publisher (publish_event coroutine)
            counters: Counter store owned by this orchestrator instance
            clock: Returns the current UTC time
        """
        self.store = store
        self.registry = registry
        self.monitor = monitor
        self.publisher = publisher
        self.counters = counters or CounterStore()
        self.clock = clock

        self.registry.disconnect_handler = self.handle_agent_disconnect
        self.monitor.on_complete = self.complete_task
        self.monitor.on_progress = self.record_progress

    # ------------------------------------------------------------- creation

    async def create_task(
        self,
        title: str,
        description: str,
        type: Any,
        priority: Any = TaskPriority.MEDIUM,
        auto_assign: bool = False,
        **options: Any
    ) -> Task:
        """
        Validate and store a new pending task.

        Args:
            title: At least 3 characters
            description: At least 10 characters
            type: Task type (enum member or string)
            priority: Task priority (enum member or string)
            auto_assign: Try to assign the task immediately
            **options: Optional context fields (repository, branch, file_paths,
                related_issues, estimated_hours, tags, created_by, sub_agent_config)

        Returns:
            The stored task (in progress when auto-assignment succeeded)

        Raises:
            ValidationError: With every violated rule; nothing is stored
        """
        errors = validate_task_fields(title, description, type, priority)
        unknown = sorted(set(options) - TASK_OPTION_FIELDS)
        if unknown:
            errors.append(f"Unknown task fields: {', '.join(unknown)}")
        if errors:
            raise ValidationError(errors)

        now = self.clock()
        try:
            task = Task(
                title=title.strip(),
                description=description.strip(),
                type=TaskType(type),
                priority=TaskPriority(priority),
                created_at=now,
                updated_at=now,
                **{key: value for key, value in options.items() if value is not None},
            )
        except PydanticValidationError as e:
            raise ValidationError([
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]) from e

        task = await self.store.create_task(task)
        self.counters.increment("tasks.created")
        logger.info(f"Task created: {task.id} '{task.title}' (type: {task.type.value}, priority: {task.priority.value})")
        await self._emit("created", task, message=f"Task created: {task.title}")

        if auto_assign:
            return await self.assign_task(task.id)
        return task

    # ----------------------------------------------------------- assignment

    async def assign_task(self, task_id: str, agent_id: Optional[str] = None) -> Task:
        """
        Assign a pending task to an agent and start it.

        With ``agent_id`` the agent must exist and be idle; capability and
        auto-accept settings are not checked. Without it the matcher picks
        the best idle agent. When no agent is available the task stays
        pending.

        Returns:
            The task's current state after the attempt

        Raises:
            NotFoundError: If the task or the explicit agent does not exist
        """
        task = await self.store.get_task(task_id)
        if task.status != TaskStatus.PENDING:
            logger.info(f"Task {task_id} is {task.status.value}, not assigning")
            return task

        if agent_id is not None:
            agent = await self.registry.get_agent(agent_id)
            if agent.status != AgentStatus.IDLE:
                logger.info(f"Agent {agent_id} is {agent.status.value}, task {task_id} stays pending")
                return task
        else:
            agent = select_best_agent(await self.registry.list_available_agents(), task)
            if agent is None:
                logger.info(f"No available agent for task {task_id} ({task.type.value}), task stays pending")
                return task

        started = await self._assign(task, agent)
        if started is None:
            return await self.store.get_task(task_id)
        return started

    async def _assign(self, task: Task, agent: Agent) -> Optional[Task]:
        """Claim ``agent`` for ``task`` and start it. Returns None if a race was lost."""
        assigned = await self.store.update_task(
            task.id,
            {
                "status": TaskStatus.ASSIGNED,
                "assigned_to": agent.id,
                "updated_at": self.clock(),
            },
            expected={"status": TaskStatus.PENDING},
        )
        if assigned is None:
            logger.info(f"Task {task.id} left pending before assignment to {agent.id}")
            return None

        if await self.registry.claim(agent.id, task.id) is None:
            await self.store.update_task(
                task.id,
                {"status": TaskStatus.PENDING, "assigned_to": None, "updated_at": self.clock()},
                expected={"status": TaskStatus.ASSIGNED, "assigned_to": agent.id},
            )
            return None

        self.counters.increment("tasks.assigned")
        logger.info(f"Task {task.id} assigned to {agent.id} ({agent.name})")
        await self._emit("assigned", assigned, agent_id=agent.id, message=f"Task assigned to {agent.name}")

        return await self.start_task(task.id)

    async def start_task(self, task_id: str) -> Task:
        """
        Move an assigned task to in_progress and spawn its session.

        A spawn failure fails the task and frees the agent; the gateway error
        is not raised.

        Raises:
            InvalidTransitionError: If the task is not assigned to an agent
        """
        task = await self.store.get_task(task_id)
        if task.status != TaskStatus.ASSIGNED or not task.assigned_to:
            raise InvalidTransitionError(
                f"Task {task_id} must be assigned before it can start (status: {task.status.value})"
            )
        agent_id = task.assigned_to

        now = self.clock()
        running = await self.store.update_task(
            task_id,
            {
                "status": TaskStatus.IN_PROGRESS,
                "started_at": now,
                "progress": INITIAL_PROGRESS,
                "updated_at": now,
            },
            expected={"status": TaskStatus.ASSIGNED, "assigned_to": agent_id},
        )
        if running is None:
            logger.info(f"Task {task_id} changed before start, not spawning")
            return await self.store.get_task(task_id)

        try:
            session = await self.monitor.spawn(running, agent_id)
        except GatewayError as e:
            return await self._fail_spawn(running, agent_id, e)
        except Exception as e:
            # the task is already in_progress; nothing would ever finish it
            logger.error(f"Unexpected error spawning session for task {task_id}: {e}", exc_info=True)
            return await self._fail_spawn(running, agent_id, e)

        linked = await self.store.update_task(
            task_id,
            {"session_id": session.id, "updated_at": self.clock()},
            expected={"status": TaskStatus.IN_PROGRESS, "assigned_to": agent_id, "session_id": None},
        )
        if linked is None:
            logger.warning(f"Task {task_id} changed while spawning, cancelling session {session.id}")
            await self.monitor.cancel_session(session.id, "Task no longer in progress")
            return await self.store.get_task(task_id)

        await self.registry.attach_session(agent_id, task_id, session.id)
        self.monitor.start(session)

        self.counters.increment("tasks.started")
        logger.info(f"Task {task_id} started on agent {agent_id} (session: {session.id})")
        await self._emit(
            "started", linked, agent_id=agent_id,
            data={"session_id": session.id}, message="Task started"
        )
        return linked

    async def _fail_spawn(self, task: Task, agent_id: str, error: Exception) -> Task:
        logger.error(f"Sub-agent spawn failed for task {task.id}: {error}")
        now = self.clock()
        failed = await self.store.update_task(
            task.id,
            {
                "status": TaskStatus.FAILED,
                "assigned_to": None,
                "error": str(error),
                "result": TaskResult(
                    success=False,
                    summary=f"Sub-agent spawn failed: {error}",
                    agent_id=agent_id,
                ),
                "completed_at": now,
                "updated_at": now,
            },
            expected={"status": TaskStatus.IN_PROGRESS, "session_id": None},
        )
        await self.registry.release(agent_id, task.id)

        if failed is None:
            return await self.store.get_task(task.id)

        self.counters.increment("tasks.failed")
        await self._emit("failed", failed, agent_id=agent_id, message=failed.result.summary)
        return failed

    # ----------------------------------------------------------- completion

    async def complete_task(self, task_id: str, session_id: str, outcome: SessionOutcome) -> Optional[Task]:
        """
        Record a session's terminal outcome on its task.

        Safe to call any number of times: a session that is already terminal
        makes the call a no-op, and a task that is terminal or has moved to
        another session is left alone (only the session is finalized).

        The task is written before the session is finalized, so a failed task
        write leaves the session open and the completion can be retried.

        Returns:
            The finished task, or None if the call changed no task
        """
        session = await self.store.get_session(session_id)
        if session.is_terminal:
            logger.debug(f"Session {session_id} already finalized, completion ignored")
            return None

        task = await self.store.get_task(task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.session_id != session_id:
            logger.info(
                f"Discarding outcome of session {session_id}: task {task_id} is "
                f"{task.status.value} (session: {task.session_id})"
            )
            await self.monitor.finalize_session(session_id, outcome)
            return None

        agent_id = task.assigned_to
        now = self.clock()
        learnings = extract_learnings(outcome.output) if outcome.success else []

        if outcome.success:
            status = TaskStatus.COMPLETED
            summary = outcome.summary or "Task completed successfully"
            error = None
        else:
            status = TaskStatus.FAILED
            error = outcome.error or "Sub-agent reported failure"
            summary = outcome.summary or f"Task failed: {error}"

        finished = await self.store.update_task(
            task_id,
            {
                "status": status,
                "progress": 100 if outcome.success else task.progress,
                "assigned_to": None,
                "error": error,
                "result": TaskResult(
                    success=outcome.success,
                    summary=summary,
                    output=outcome.output,
                    learnings=learnings,
                    agent_id=agent_id,
                    session_id=session_id,
                ),
                "completed_at": now,
                "updated_at": now,
            },
            expected={"status": TaskStatus.IN_PROGRESS, "session_id": session_id},
        )
        if finished is None:
            logger.info(f"Task {task_id} changed during completion, outcome discarded")
            await self.monitor.finalize_session(session_id, outcome)
            return None

        await self.monitor.finalize_session(session_id, outcome)

        if agent_id:
            await self.registry.release(agent_id, task_id)
            duration_ms = (now - (task.started_at or now)).total_seconds() * 1000.0
            try:
                await self.registry.record_outcome(agent_id, duration_ms, outcome.success)
            except NotFoundError:
                logger.info(f"Agent {agent_id} deregistered, outcome stats not recorded")

        if learnings:
            await self.store.create_learning(
                Learning(task_id=task_id, task_type=task.type, learnings=learnings, created_at=now)
            )

        self.counters.increment(f"tasks.{status.value}")
        logger.info(f"Task {task_id} {status.value}: {summary}")
        await self._emit(status.value, finished, agent_id=agent_id, message=summary)

        try:
            await self.process_next_task()
        except Exception as e:
            logger.error(f"Queue drain after completing task {task_id} failed: {e}", exc_info=True)

        return finished

    async def record_progress(self, task_id: str, session_id: str) -> Optional[Task]:
        """Advance a running task's progress by one step, never past 90"""
        task = await self.store.get_task(task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.session_id != session_id:
            return None
        if task.progress >= MAX_RUNNING_PROGRESS:
            return task

        return await self.store.update_task(
            task_id,
            {
                "progress": min(task.progress + PROGRESS_STEP, MAX_RUNNING_PROGRESS),
                "updated_at": self.clock(),
            },
            expected={
                "status": TaskStatus.IN_PROGRESS,
                "session_id": session_id,
                "progress": task.progress,
            },
        )

    # --------------------------------------------------------- cancellation

    async def cancel_task(self, task_id: str, reason: Optional[str] = None) -> Task:
        """
        Cancel a task that has not finished.

        An active session is cancelled on the gateway best-effort and its
        monitoring is torn down.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the task is already terminal
        """
        task = await self.store.get_task(task_id)
        if task.is_terminal:
            raise InvalidTransitionError(f"Task {task_id} is already {task.status.value}")

        reason = reason or "Cancelled by system"

        if task.session_id:
            try:
                await self.monitor.cancel_session(task.session_id, reason)
            except NotFoundError:
                logger.warning(f"Session {task.session_id} of task {task_id} not found")

        now = self.clock()
        cancelled = await self.store.update_task(
            task_id,
            {
                "status": TaskStatus.CANCELLED,
                "assigned_to": None,
                "error": reason,
                "completed_at": now,
                "updated_at": now,
            },
            expected={"status": NON_TERMINAL_TASK_STATUSES},
        )
        if cancelled is None:
            current = await self.store.get_task(task_id)
            raise InvalidTransitionError(f"Task {task_id} is already {current.status.value}")

        if task.assigned_to:
            await self.registry.release(task.assigned_to, task_id)

        self.counters.increment("tasks.cancelled")
        logger.info(f"Task {task_id} cancelled: {reason}")
        await self._emit("cancelled", cancelled, agent_id=task.assigned_to, message=reason)
        return cancelled

    # ---------------------------------------------------------------- queue

    async def process_next_task(self) -> Optional[Task]:
        """
        Assign the highest ranked pending task that has an available agent.

        Makes at most one assignment per call.

        Returns:
            The task that was assigned, or None
        """
        pending = await self.store.list_tasks(status=TaskStatus.PENDING)
        if not pending:
            return None

        agents = await self.registry.list_available_agents()
        if not agents:
            logger.debug(f"{len(pending)} pending tasks, no idle agents")
            return None

        now = self.clock()
        ranked = sorted(pending, key=lambda task: (-priority_score(task, now), task.id))

        for task in ranked:
            agent = select_best_agent(agents, task)
            if agent is None:
                continue
            assigned = await self._assign(task, agent)
            if assigned is not None:
                return assigned

        return None

    # ------------------------------------------------------------- recovery

    async def handle_agent_disconnect(self, agent: Agent) -> Optional[Task]:
        """
        Return a lost agent's task to the queue.

        Only assigned or in_progress tasks still held by the agent are reset.
        The remote session keeps running; its eventual outcome finalizes the
        session record and nothing else.

        Returns:
            The reset task, or None if nothing needed recovery
        """
        if not agent.current_task_id:
            return None

        try:
            task = await self.store.get_task(agent.current_task_id)
        except NotFoundError:
            logger.warning(f"Agent {agent.id} referenced missing task {agent.current_task_id}")
            return None

        if task.status not in ACTIVE_TASK_STATUSES or task.assigned_to != agent.id:
            return None

        recovered = await self.store.update_task(
            task.id,
            {
                "status": TaskStatus.PENDING,
                "assigned_to": None,
                "session_id": None,
                "started_at": None,
                "progress": 0,
                "updated_at": self.clock(),
            },
            expected={"status": ACTIVE_TASK_STATUSES, "assigned_to": agent.id},
        )
        if recovered is None:
            return None

        self.counters.increment("tasks.recovered")
        logger.warning(f"Task {task.id} reset to pending after agent {agent.id} disconnected")
        await self._emit(
            "recovered", recovered, agent_id=agent.id,
            data={"orphaned_session_id": task.session_id},
            message=f"Agent {agent.name} disconnected, task returned to queue"
        )
        return recovered

    # -------------------------------------------------------------- queries

    async def get_task(self, task_id: str) -> Task:
        return await self.store.get_task(task_id)

    async def list_tasks(self, status: Any = None, task_type: Any = None, limit: Optional[int] = None) -> List[Task]:
        return await self.store.list_tasks(
            status=TaskStatus(status) if status else None,
            task_type=TaskType(task_type) if task_type else None,
            limit=limit,
        )

    async def get_active_tasks(self) -> List[Task]:
        return await self.store.list_tasks(status=ACTIVE_TASK_STATUSES)

    async def get_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        return await self.store.list_tasks(status=TaskStatus(status))

    async def cleanup_sessions(self, older_than_days: float = 30) -> int:
        """Delete finished sessions older than the retention window"""
        deleted = await self.store.cleanup_sessions(timedelta(days=older_than_days), self.clock())
        if deleted:
            logger.info(f"Cleaned up {deleted} sessions older than {older_than_days} days")
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        tasks = await self.store.list_tasks()
        by_status = Counter(task.status.value for task in tasks)
        return {
            "tasks": {
                "total": len(tasks),
                **{status.value: by_status.get(status.value, 0) for status in TaskStatus},
            },
            "agents": await self.registry.get_system_stats(),
            "active_sessions": self.monitor.active_count,
            "counters": self.counters.snapshot(),
        }

    # --------------------------------------------------------------- events

    async def _emit(
        self,
        event_type: str,
        task: Task,
        agent_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        message: str = ""
    ) -> None:
        if self.publisher is None:
            return
        event = TaskEvent(
            event_type=event_type,
            task_id=task.id,
            agent_id=agent_id,
            data={"status": task.status.value, "progress": task.progress, **(data or {})},
            message=message,
        )
        try:
            await self.publisher.publish_event(event)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} event for task {task.id}: {e}")
