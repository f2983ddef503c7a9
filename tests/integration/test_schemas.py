"""
Tests for the record and message schemas.
"""

import pytest
from pydantic import ValidationError

from agents.shared.schemas import (
    Agent,
    AgentCapability,
    AgentConfig,
    RegistrationAckMessage,
    RegistrationMessage,
    Session,
    SessionStatus,
    Task,
    TaskEvent,
    TaskPriority,
    TaskStatus,
    TaskType,
    TERMINAL_TASK_STATUSES,
    can_transition,
    sources_for,
)


def make_task(**fields):
    return Task(title="Some task", description="Long enough description", type=TaskType.CODE, **fields)


class TestTaskStateMachine:
    """Test the task transition table"""

    @pytest.mark.parametrize("current,target", [
        (TaskStatus.PENDING, TaskStatus.ASSIGNED),
        (TaskStatus.PENDING, TaskStatus.CANCELLED),
        (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
        (TaskStatus.ASSIGNED, TaskStatus.PENDING),
        (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
        (TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
        (TaskStatus.IN_PROGRESS, TaskStatus.PENDING),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
        (TaskStatus.PENDING, TaskStatus.COMPLETED),
        (TaskStatus.ASSIGNED, TaskStatus.COMPLETED),
    ])
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_statuses_are_final(self):
        for terminal in TERMINAL_TASK_STATUSES:
            assert not any(can_transition(terminal, target) for target in TaskStatus)

    def test_sources_for_cancelled(self):
        assert sources_for(TaskStatus.CANCELLED) == {
            TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS
        }

    def test_accepts_plain_strings(self):
        assert can_transition("pending", "assigned")


class TestRecords:
    """Test record defaults and constraints"""

    def test_task_defaults(self):
        task = make_task()

        assert task.id.startswith("task-")
        assert task.status == TaskStatus.PENDING
        assert task.priority == TaskPriority.MEDIUM
        assert task.progress == 0
        assert task.created_by == "system"
        assert not task.is_terminal

    def test_task_ids_are_unique(self):
        assert make_task().id != make_task().id

    def test_progress_bounds(self):
        with pytest.raises(ValidationError):
            make_task(progress=101)
        with pytest.raises(ValidationError):
            make_task(progress=-1)

    def test_agent_defaults(self):
        agent = Agent(name="Coder", capabilities=[AgentCapability.CODE])

        assert agent.id.startswith("agent-")
        assert agent.success_rate == 100.0
        assert agent.total_tasks == 0
        assert agent.config.max_concurrent_tasks == 1
        assert agent.config.auto_accept_tasks is True

    def test_agent_config_requires_positive_concurrency(self):
        with pytest.raises(ValidationError):
            AgentConfig(max_concurrent_tasks=0)

    def test_session_terminal(self):
        session = Session(task_id="task-1", agent_id="agent-1")
        assert session.status == SessionStatus.STARTING
        assert not session.is_terminal
        assert Session(task_id="t", agent_id="a", status=SessionStatus.CANCELLED).is_terminal


class TestMessages:
    """Test RabbitMQ message serialization"""

    def test_registration_message(self):
        msg = RegistrationMessage(agent_name="Coder", capabilities=[AgentCapability.CODE])

        json_str = msg.to_json()
        assert "Coder" in json_str

        restored = RegistrationMessage.from_json(json_str)
        assert restored.message_type == "registration"
        assert restored.capabilities == ["code"]

    def test_registration_rejects_unknown_capability(self):
        with pytest.raises(ValidationError):
            RegistrationMessage.from_json('{"agent_name": "Chef", "capabilities": ["cooking"]}')

    def test_ack_status_is_restricted(self):
        with pytest.raises(ValidationError):
            RegistrationAckMessage(agent_name="Coder", status="maybe", message="?")

    def test_task_event_types(self):
        TaskEvent(event_type="recovered", task_id="task-1", message="back in queue")
        with pytest.raises(ValidationError):
            TaskEvent(event_type="exploded", message="?")
