"""
Capability Matcher - Maps task types to agent capabilities and ranks agents

Pure functions, no I/O. Used by the task orchestrator to pick an agent and
to order the pending queue.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional, Union

from agents.shared.schemas import (
    Agent,
    AgentCapability,
    AgentStatus,
    Task,
    TaskPriority,
    TaskType,
)

logger = logging.getLogger(__name__)

TASK_CAPABILITIES: Dict[TaskType, FrozenSet[AgentCapability]] = {
    TaskType.CODE: frozenset({AgentCapability.CODE, AgentCapability.FULLSTACK}),
    TaskType.BUGFIX: frozenset({
        AgentCapability.BUGFIX,
        AgentCapability.CODE,
        AgentCapability.FULLSTACK,
    }),
    TaskType.REVIEW: frozenset({AgentCapability.REVIEW, AgentCapability.CODE}),
    TaskType.DEPLOY: frozenset({AgentCapability.DEPLOY}),
    TaskType.RESEARCH: frozenset({AgentCapability.RESEARCH}),
    TaskType.DOCUMENTATION: frozenset({AgentCapability.DOCUMENTATION}),
    TaskType.TEST: frozenset({AgentCapability.TEST, AgentCapability.CODE}),
    TaskType.MAINTENANCE: frozenset({AgentCapability.MAINTENANCE, AgentCapability.CODE}),
}

# Unknown task types fail closed to this set
DEFAULT_CAPABILITIES: FrozenSet[AgentCapability] = frozenset({AgentCapability.CODE})

PRIORITY_WEIGHTS: Dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 100,
    TaskPriority.HIGH: 50,
    TaskPriority.MEDIUM: 25,
    TaskPriority.LOW: 10,
}

MAX_AGE_BOOST_HOURS = 24.0
SUCCESS_RATE_WEIGHT = 0.6
EXPERIENCE_WEIGHT = 0.4
EXPERIENCE_CAP = 100


def required_capabilities(task_type: Union[TaskType, str]) -> FrozenSet[AgentCapability]:
    """
    Get the capabilities that satisfy a task type.

    Args:
        task_type: Task type (enum member or raw string)

    Returns:
        Set of acceptable capabilities. Unknown types map to {code}.
    """
    try:
        return TASK_CAPABILITIES[TaskType(task_type)]
    except ValueError:
        logger.warning(f"Unknown task type '{task_type}', falling back to {{code}}")
        return DEFAULT_CAPABILITIES


def can_handle(agent: Agent, task_type: Union[TaskType, str]) -> bool:
    return not required_capabilities(task_type).isdisjoint(agent.capabilities)


def accepts(agent: Agent, task_type: Union[TaskType, str]) -> bool:
    """
    Whether the agent's own config allows it to be picked automatically.

    Agents with auto_accept_tasks disabled only take explicit assignments.
    An empty accepted_task_types list accepts every type.
    """
    if not agent.config.auto_accept_tasks:
        return False
    accepted = agent.config.accepted_task_types
    if not accepted:
        return True
    try:
        return TaskType(task_type) in accepted
    except ValueError:
        return False


def score(agent: Agent) -> float:
    """
    Rank an agent for selection. Higher is better.

    Both terms are normalized to [0, 1]: success rate as a fraction, and
    experience as completed tasks capped at EXPERIENCE_CAP.
    """
    reliability = agent.success_rate / 100.0
    experience = min(agent.total_tasks_completed, EXPERIENCE_CAP) / EXPERIENCE_CAP
    return SUCCESS_RATE_WEIGHT * reliability + EXPERIENCE_WEIGHT * experience


def select_best_agent(agents: Iterable[Agent], task: Task) -> Optional[Agent]:
    """
    Pick the best idle agent able to handle a task.

    Args:
        agents: Candidate agents (any order)
        task: Task to place

    Returns:
        Highest scoring idle, capable agent, or None. Ties go to the lowest id.
    """
    candidates = [
        agent for agent in agents
        if agent.status == AgentStatus.IDLE
        and can_handle(agent, task.type)
        and accepts(agent, task.type)
    ]
    if not candidates:
        return None

    return min(candidates, key=lambda agent: (-score(agent), agent.id))


def priority_score(task: Task, now: datetime) -> float:
    """
    Queue ordering score: priority weight plus age in hours, capped at 24.
    """
    age_hours = max(0.0, (now - task.created_at).total_seconds() / 3600.0)
    return PRIORITY_WEIGHTS.get(TaskPriority(task.priority), 0) + min(age_hours, MAX_AGE_BOOST_HOURS)
