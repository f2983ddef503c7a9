"""
Record Store - Persistence interface for tasks, agents, sessions and learnings

The orchestrator never holds locks around records. Instead every update may
carry an ``expected`` mapping: the change is applied only if each listed
field still has the expected value (or one of the values, when a set/tuple
is given). A failed expectation returns None so the caller can treat the
race as already resolved.

InMemoryStore is the reference implementation used by the service and the
test suite. All its methods run without suspending, so each call is atomic
on the event loop.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, TypeVar

from pydantic import BaseModel

from agents.shared.schemas import (
    Agent,
    Learning,
    Session,
    SessionLog,
    Task,
    TERMINAL_SESSION_STATUSES,
)
from orchestrator.errors import NotFoundError, StoreError

RecordT = TypeVar("RecordT", bound=BaseModel)

DEFAULT_SESSION_LOG_LIMIT = 1000


def _matches(value: Any, wanted: Any) -> bool:
    if isinstance(wanted, (set, frozenset, tuple, list)):
        return value in wanted
    return value == wanted


def _meets(record: BaseModel, expected: Optional[Dict[str, Any]]) -> bool:
    if not expected:
        return True
    return all(_matches(getattr(record, field), wanted) for field, wanted in expected.items())


def _as_set(value: Any) -> Optional[frozenset]:
    if value is None:
        return None
    if isinstance(value, (set, frozenset, tuple, list)):
        return frozenset(value)
    return frozenset({value})


class Store(ABC):
    """
    Abstract async record store

    Missing ids raise NotFoundError. Any failure of the backend itself
    (unreachable database, rejected write) must be raised as StoreError so
    callers and the admin API can tell it apart from orchestration errors.
    """

    # Tasks
    @abstractmethod
    async def create_task(self, task: Task) -> Task: ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Task: ...

    @abstractmethod
    async def list_tasks(
        self,
        status: Any = None,
        task_type: Any = None,
        assigned_to: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Task]: ...

    @abstractmethod
    async def update_task(
        self,
        task_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Task]: ...

    # Agents
    @abstractmethod
    async def create_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Agent: ...

    @abstractmethod
    async def list_agents(self, status: Any = None) -> List[Agent]: ...

    @abstractmethod
    async def update_agent(
        self,
        agent_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Agent]: ...

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> None: ...

    # Sessions
    @abstractmethod
    async def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session: ...

    @abstractmethod
    async def list_sessions(
        self,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        status: Any = None,
        started_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Session]: ...

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]: ...

    @abstractmethod
    async def append_session_log(self, session_id: str, entry: SessionLog) -> Session: ...

    @abstractmethod
    async def delete_sessions(self, session_ids: Iterable[str]) -> int: ...

    # Learnings
    @abstractmethod
    async def create_learning(self, learning: Learning) -> Learning: ...

    @abstractmethod
    async def list_learnings(self, task_type: Any = None) -> List[Learning]: ...

    async def cleanup_sessions(self, older_than: timedelta, now: datetime) -> int:
        """Delete terminal sessions that started before ``now - older_than``"""
        stale = await self.list_sessions(
            status=TERMINAL_SESSION_STATUSES,
            started_before=now - older_than,
        )
        return await self.delete_sessions(session.id for session in stale)


class InMemoryStore(Store):
    """
    Dictionary-backed store.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self, session_log_limit: int = DEFAULT_SESSION_LOG_LIMIT):
        self.session_log_limit = session_log_limit
        self._tasks: Dict[str, Task] = {}
        self._agents: Dict[str, Agent] = {}
        self._sessions: Dict[str, Session] = {}
        self._learnings: List[Learning] = []

    @staticmethod
    def _copy(record: RecordT) -> RecordT:
        return record.model_copy(deep=True)

    @staticmethod
    def _require(records: Dict[str, RecordT], kind: str, record_id: str) -> RecordT:
        record = records.get(record_id)
        if record is None:
            raise NotFoundError(kind, record_id)
        return record

    def _update(
        self,
        records: Dict[str, RecordT],
        kind: str,
        record_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]],
    ) -> Optional[RecordT]:
        current = self._require(records, kind, record_id)
        fields = type(current).model_fields
        unknown = sorted((set(changes) | set(expected or {})) - set(fields))
        if unknown:
            raise StoreError(f"Rejected {kind} write: unknown fields {', '.join(unknown)}")
        if not _meets(current, expected):
            return None
        updated = current.model_copy(update=changes, deep=True)
        records[record_id] = updated
        return self._copy(updated)

    # ------------------------------------------------------------------ tasks

    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = self._copy(task)
        return self._copy(task)

    async def get_task(self, task_id: str) -> Task:
        return self._copy(self._require(self._tasks, "task", task_id))

    async def list_tasks(
        self,
        status: Any = None,
        task_type: Any = None,
        assigned_to: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        statuses = _as_set(status)
        types = _as_set(task_type)
        tasks = [
            task for task in self._tasks.values()
            if (statuses is None or task.status in statuses)
            and (types is None or task.type in types)
            and (assigned_to is None or task.assigned_to == assigned_to)
            and (created_after is None or task.created_at >= created_after)
            and (created_before is None or task.created_at < created_before)
        ]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        if limit is not None:
            tasks = tasks[:limit]
        return [self._copy(task) for task in tasks]

    async def update_task(
        self,
        task_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Task]:
        return self._update(self._tasks, "task", task_id, changes, expected)

    # ----------------------------------------------------------------- agents

    async def create_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = self._copy(agent)
        return self._copy(agent)

    async def get_agent(self, agent_id: str) -> Agent:
        return self._copy(self._require(self._agents, "agent", agent_id))

    async def list_agents(self, status: Any = None) -> List[Agent]:
        statuses = _as_set(status)
        return [
            self._copy(agent) for agent in self._agents.values()
            if statuses is None or agent.status in statuses
        ]

    async def update_agent(
        self,
        agent_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Agent]:
        return self._update(self._agents, "agent", agent_id, changes, expected)

    async def delete_agent(self, agent_id: str) -> None:
        self._require(self._agents, "agent", agent_id)
        del self._agents[agent_id]

    # --------------------------------------------------------------- sessions

    async def create_session(self, session: Session) -> Session:
        self._sessions[session.id] = self._copy(session)
        return self._copy(session)

    async def get_session(self, session_id: str) -> Session:
        return self._copy(self._require(self._sessions, "session", session_id))

    async def list_sessions(
        self,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        status: Any = None,
        started_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Session]:
        statuses = _as_set(status)
        sessions = [
            session for session in self._sessions.values()
            if (task_id is None or session.task_id == task_id)
            and (agent_id is None or session.agent_id == agent_id)
            and (statuses is None or session.status in statuses)
            and (started_before is None or session.started_at < started_before)
        ]
        sessions.sort(key=lambda session: session.started_at, reverse=True)
        if limit is not None:
            sessions = sessions[:limit]
        return [self._copy(session) for session in sessions]

    async def update_session(
        self,
        session_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]:
        return self._update(self._sessions, "session", session_id, changes, expected)

    async def append_session_log(self, session_id: str, entry: SessionLog) -> Session:
        session = self._require(self._sessions, "session", session_id)
        logs = session.logs + [entry.model_copy()]
        if len(logs) > self.session_log_limit:
            logs = logs[-self.session_log_limit:]
        session.logs = logs
        return self._copy(session)

    async def delete_sessions(self, session_ids: Iterable[str]) -> int:
        deleted = 0
        for session_id in list(session_ids):
            if self._sessions.pop(session_id, None) is not None:
                deleted += 1
        return deleted

    # -------------------------------------------------------------- learnings

    async def create_learning(self, learning: Learning) -> Learning:
        self._learnings.append(self._copy(learning))
        return self._copy(learning)

    async def list_learnings(self, task_type: Any = None) -> List[Learning]:
        types = _as_set(task_type)
        return [
            self._copy(learning) for learning in self._learnings
            if types is None or learning.task_type in types
        ]
