"""
Orchestrator - Task/agent orchestration engine

Assigns tasks to agents, tracks each task's remote execution session and
returns work to the queue when an agent stops responding.
"""

from .errors import (
    OrchestratorError,
    ValidationError,
    InvalidTransitionError,
    NotFoundError,
    GatewayError,
    StoreError,
)
from .metrics import CounterStore
from .store import Store, InMemoryStore
from .registry import AgentRegistry

__all__ = [
    "OrchestratorError",
    "ValidationError",
    "InvalidTransitionError",
    "NotFoundError",
    "GatewayError",
    "StoreError",
    "CounterStore",
    "Store",
    "InMemoryStore",
    "AgentRegistry",
]
