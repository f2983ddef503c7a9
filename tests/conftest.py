"""
Task Orchestration - Test Fixtures

Shared fixtures: a controllable clock, an in-process execution gateway,
the orchestration components wired over an InMemoryStore, and RabbitMQ
connection info for messaging tests.

RabbitMQ HYBRID MODE:
- If RABBITMQ_HOST is set: uses that broker (e.g. docker-compose)
- Otherwise: starts one with testcontainers, or skips if unavailable
"""

import asyncio
import os
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional, Union

import pytest

from agents.shared.gateway import ExecutionGateway
from agents.shared.messaging import RabbitMQClient
from agents.shared.schemas import (
    AgentCapability,
    GatewayStatus,
    Task,
    TaskStatus,
)
from orchestrator.config import OrchestratorSettings
from orchestrator.main import OrchestratorService
from orchestrator.metrics import CounterStore
from orchestrator.registry import AgentRegistry
from orchestrator.session_monitor import SessionMonitor
from orchestrator.store import InMemoryStore
from orchestrator.task_manager import TaskOrchestrator

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(ExecutionGateway):
    """
    In-process execution gateway.

    Sessions report "running" until a test sets their status. Errors can be
    injected for spawn, poll and cancel.
    """

    def __init__(self):
        self.spawned: List[Task] = []
        self.cancelled: List[str] = []
        self.polls: List[str] = []
        self.statuses: Dict[str, Union[GatewayStatus, Exception]] = {}
        self.spawn_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.closed = False

    async def spawn(self, task: Task) -> str:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.spawned.append(task)
        return f"ext-{len(self.spawned)}"

    async def poll(self, external_session_id: str) -> GatewayStatus:
        self.polls.append(external_session_id)
        status = self.statuses.get(external_session_id, GatewayStatus(status="running"))
        if isinstance(status, Exception):
            raise status
        return status

    async def cancel(self, external_session_id: str) -> None:
        self.cancelled.append(external_session_id)
        if self.cancel_error is not None:
            raise self.cancel_error

    def finish(self, external_session_id: str, output: str = "Done") -> None:
        self.statuses[external_session_id] = GatewayStatus(status="completed", output=output)

    def fail(self, external_session_id: str, error: str = "Sub-agent crashed") -> None:
        self.statuses[external_session_id] = GatewayStatus(status="failed", error=error)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counters():
    return CounterStore()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def registry(store, clock, counters):
    return AgentRegistry(store, clock=clock, counters=counters)


@pytest.fixture
async def monitor(store, gateway, clock, counters):
    monitor = SessionMonitor(store, gateway, poll_interval=0.01, clock=clock, counters=counters)
    yield monitor
    await monitor.shutdown()


@pytest.fixture
def orchestrator(store, registry, monitor, clock, counters):
    return TaskOrchestrator(store, registry, monitor, counters=counters, clock=clock)


@pytest.fixture
def service(gateway, clock):
    """OrchestratorService over the fake gateway with fast polling and default settings"""
    settings = OrchestratorSettings(poll_interval=0.01)
    return OrchestratorService(settings=settings, store=InMemoryStore(), gateway=gateway, clock=clock)


@pytest.fixture
def make_agent(registry):
    """Register an agent: await make_agent("name", "code", "fullstack")"""
    async def _make(name: str = "Coder", *capabilities: str, **kwargs):
        caps = [AgentCapability(c) for c in (capabilities or ("code",))]
        return await registry.register(name, caps, **kwargs)
    return _make


@pytest.fixture
def wait_for_status(store):
    """Poll the store until a task reaches one of the given statuses"""
    async def _wait(task_id: str, *statuses, timeout: float = 2.0) -> Task:
        wanted = {TaskStatus(s) for s in statuses}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            task = await store.get_task(task_id)
            if task.status in wanted or loop.time() > deadline:
                return task
            await asyncio.sleep(0.01)
    return _wait


@pytest.fixture(scope="session")
def rabbitmq_connection_info():
    """
    Provides RabbitMQ connection information.

    Uses RABBITMQ_HOST when set, otherwise a testcontainers broker.
    """
    external_host = os.getenv("RABBITMQ_HOST")

    if external_host:
        yield {
            "host": external_host,
            "port": int(os.getenv("RABBITMQ_PORT", "5672")),
            "user": os.getenv("RABBITMQ_USER", "guest"),
            "password": os.getenv("RABBITMQ_PASSWORD", "guest"),
            "source": "external"
        }
        return

    try:
        from testcontainers.rabbitmq import RabbitMqContainer
    except ImportError:
        pytest.skip("testcontainers not available and RABBITMQ_HOST not set")

    try:
        container = RabbitMqContainer("rabbitmq:3.12-management")
        container.start()
    except Exception as e:
        pytest.skip(f"Could not start RabbitMQ container: {e}")

    try:
        yield {
            "host": container.get_container_host_ip(),
            "port": int(container.get_exposed_port(5672)),
            "user": "guest",
            "password": "guest",
            "source": "testcontainers"
        }
    finally:
        container.stop()


@pytest.fixture
async def rabbitmq_client(rabbitmq_connection_info):
    """RabbitMQ client connected to the test broker with the topology declared"""
    client = RabbitMQClient(
        host=rabbitmq_connection_info["host"],
        port=rabbitmq_connection_info["port"],
        user=rabbitmq_connection_info["user"],
        password=rabbitmq_connection_info["password"],
        max_retries=3,
        retry_delay=1
    )
    await client.connect()
    await client.setup_project_topology()

    yield client

    await client.disconnect()
