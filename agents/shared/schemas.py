"""
Task Orchestration - Records and Message Schemas

Pydantic models for tasks, agents and sessions, plus the RabbitMQ messages
exchanged between agents and the orchestrator.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime, UTC
from enum import Enum
from typing import Optional, Dict, Any, List, Literal
import uuid


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(UTC)


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


# ============================================
# Enumerations
# ============================================

class TaskType(str, Enum):
    CODE = "code"
    BUGFIX = "bugfix"
    REVIEW = "review"
    DEPLOY = "deploy"
    RESEARCH = "research"
    DOCUMENTATION = "documentation"
    TEST = "test"
    MAINTENANCE = "maintenance"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"
    ERROR = "error"


class AgentCapability(str, Enum):
    CODE = "code"
    BUGFIX = "bugfix"
    REVIEW = "review"
    DEPLOY = "deploy"
    RESEARCH = "research"
    DOCUMENTATION = "documentation"
    TEST = "test"
    MAINTENANCE = "maintenance"
    FULLSTACK = "fullstack"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

ACTIVE_TASK_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})

NON_TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.PENDING,
    TaskStatus.ASSIGNED,
    TaskStatus.IN_PROGRESS,
})

TERMINAL_SESSION_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})

ACTIVE_SESSION_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING})

# Legal task status changes. Recovery moves assigned/in_progress back to pending.
TASK_TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.CANCELLED}),
    TaskStatus.ASSIGNED: frozenset({
        TaskStatus.IN_PROGRESS,
        TaskStatus.CANCELLED,
        TaskStatus.PENDING,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.PENDING,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return TaskStatus(target) in TASK_TRANSITIONS[TaskStatus(current)]


def sources_for(target: TaskStatus) -> frozenset:
    """All statuses from which a task may move to ``target``"""
    return frozenset(
        status for status, targets in TASK_TRANSITIONS.items() if target in targets
    )


# ============================================
# Task Records
# ============================================

class SubAgentConfig(BaseModel):
    """Settings passed to the execution gateway when spawning a sub-agent"""
    model: Optional[str] = None
    thinking: Optional[Literal["low", "medium", "high"]] = None
    timeout: Optional[int] = None
    max_retries: Optional[int] = None
    tools: Optional[List[str]] = None


class TaskResult(BaseModel):
    """Outcome recorded on a task once it reaches completed or failed"""
    success: bool
    summary: str
    output: Optional[str] = None
    learnings: List[str] = []
    agent_id: Optional[str] = None
    session_id: Optional[str] = None


class Task(BaseModel):
    """A unit of work tracked through the task state machine"""
    id: str = Field(default_factory=lambda: generate_id("task"))
    title: str
    description: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM

    assigned_to: Optional[str] = None
    session_id: Optional[str] = None
    created_by: str = "system"

    repository: Optional[str] = None
    branch: Optional[str] = None
    file_paths: List[str] = []
    related_issues: List[int] = []

    progress: int = Field(default=0, ge=0, le=100)
    estimated_hours: Optional[float] = None

    result: Optional[TaskResult] = None
    error: Optional[str] = None
    tags: List[str] = []
    sub_agent_config: Optional[SubAgentConfig] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class Learning(BaseModel):
    """Lines worth keeping from a successful task's output"""
    task_id: str
    task_type: TaskType
    learnings: List[str]
    created_at: datetime = Field(default_factory=utcnow)


# ============================================
# Agent Records
# ============================================

class AgentConfig(BaseModel):
    max_concurrent_tasks: int = Field(default=1, ge=1)
    accepted_task_types: List[TaskType] = []
    auto_accept_tasks: bool = True


class Agent(BaseModel):
    """A worker capable of executing tasks"""
    id: str = Field(default_factory=lambda: generate_id("agent"))
    name: str
    status: AgentStatus = AgentStatus.IDLE
    capabilities: List[AgentCapability]

    current_task_id: Optional[str] = None
    current_session_id: Optional[str] = None

    total_tasks_completed: int = 0
    total_tasks_failed: int = 0
    average_task_duration_ms: float = 0.0
    success_rate: float = 100.0

    last_active_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    config: AgentConfig = Field(default_factory=AgentConfig)

    @property
    def total_tasks(self) -> int:
        return self.total_tasks_completed + self.total_tasks_failed


# ============================================
# Session Records
# ============================================

class SessionLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: Literal["info", "warn", "error", "debug"] = "info"
    message: str
    metadata: Dict[str, Any] = {}


class Session(BaseModel):
    """One remote execution bound to a task/agent pair"""
    id: str = Field(default_factory=lambda: generate_id("session"))
    task_id: str
    agent_id: str
    external_session_id: Optional[str] = None
    status: SessionStatus = SessionStatus.STARTING
    logs: List[SessionLog] = []
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


class GatewayStatus(BaseModel):
    """Raw status of a remote session as reported by the execution gateway"""
    status: str
    output: Optional[str] = None
    error: Optional[str] = None
    completed_at: Optional[str] = None


class SessionOutcome(BaseModel):
    """Terminal result handed from the session monitor to the orchestrator"""
    success: bool
    status: SessionStatus
    output: Optional[str] = None
    error: Optional[str] = None
    summary: Optional[str] = None


# ============================================
# RabbitMQ Messages
# ============================================

class BaseMessage(BaseModel):
    """Base class for all messages sent over RabbitMQ"""
    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True
    )

    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str):
        """Deserialize from JSON string"""
        return cls.model_validate_json(json_str)


class RegistrationMessage(BaseMessage):
    """Agent self-registration message"""
    message_type: Literal["registration"] = "registration"
    agent_name: str
    capabilities: List[AgentCapability]
    config: AgentConfig = Field(default_factory=AgentConfig)


class RegistrationAckMessage(BaseMessage):
    """Orchestrator registration acknowledgment"""
    message_type: Literal["registration_ack"] = "registration_ack"
    agent_name: str
    agent_id: Optional[str] = None
    status: Literal["registered", "rejected"]
    message: str


class HeartbeatMessage(BaseMessage):
    """Periodic liveness signal from a registered agent"""
    message_type: Literal["heartbeat"] = "heartbeat"
    agent_id: str


class TaskEvent(BaseMessage):
    """Lifecycle event published whenever a task or agent changes state"""
    message_type: Literal["task_event"] = "task_event"
    event_type: Literal[
        "created",
        "assigned",
        "started",
        "completed",
        "failed",
        "cancelled",
        "recovered",
        "agent_offline",
    ]
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    data: Dict[str, Any] = {}
    message: str
