"""
Orchestrator Main Entry Point

Starts the orchestrator service:
1. Builds the store, registry, session monitor and task orchestrator
2. Connects to RabbitMQ for agent registration, heartbeats and events
   (the service keeps running without messaging if the broker is down)
3. Runs the periodic jobs: health sweep, queue drain, session cleanup
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from dotenv import load_dotenv

from agents.shared.file_logger import setup_file_logger
from agents.shared.gateway import ExecutionGateway, ExecutionGatewayClient
from agents.shared.messaging import RabbitMQClient
from agents.shared.schemas import Agent, Task, utcnow
from orchestrator.config import OrchestratorSettings
from orchestrator.handlers import AgentMessageHandler
from orchestrator.metrics import CounterStore
from orchestrator.progress_publisher import TaskEventPublisher
from orchestrator.registry import AgentRegistry
from orchestrator.session_monitor import SessionMonitor
from orchestrator.store import InMemoryStore, Store
from orchestrator.task_manager import TaskOrchestrator

logger = logging.getLogger(__name__)

# Upper bound on assignments made by one queue drain
MAX_DRAIN_ASSIGNMENTS = 100


class OrchestratorService:
    """Wires the orchestration components together and runs the periodic jobs"""

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        store: Optional[Store] = None,
        gateway: Optional[ExecutionGateway] = None,
        rabbitmq: Optional[RabbitMQClient] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize orchestrator components.

        Args:
            settings: Service settings (read from the environment if omitted)
            store: Record store (in-memory if omitted)
            gateway: Execution gateway (HTTP client from settings if omitted)
            rabbitmq: RabbitMQ client (built from settings if omitted)
            clock: Returns the current UTC time
        """
        self.settings = settings or OrchestratorSettings.from_env()
        self.counters = CounterStore()
        self.clock = clock

        self.store = store or InMemoryStore(session_log_limit=self.settings.session_log_limit)
        self.gateway = gateway or ExecutionGatewayClient(
            base_url=self.settings.gateway_url,
            api_key=self.settings.gateway_api_key,
            timeout=self.settings.gateway_timeout,
            workdir=self.settings.workspace_dir
        )
        self.rabbitmq = rabbitmq

        self.registry = AgentRegistry(self.store, clock=clock, counters=self.counters)
        self.monitor = SessionMonitor(
            self.store,
            self.gateway,
            poll_interval=self.settings.poll_interval,
            session_timeout=self.settings.session_timeout,
            clock=clock,
            counters=self.counters
        )
        self.orchestrator = TaskOrchestrator(
            self.store,
            self.registry,
            self.monitor,
            counters=self.counters,
            clock=clock
        )

        self.publisher: Optional[TaskEventPublisher] = None
        self.message_handler: Optional[AgentMessageHandler] = None

        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

    @property
    def messaging_enabled(self) -> bool:
        return self.publisher is not None

    async def start(self, connect_messaging: bool = True, run_jobs: bool = True) -> None:
        """
        Start the service.

        Args:
            connect_messaging: Connect to RabbitMQ for agent messages and events
            run_jobs: Start the periodic background jobs
        """
        logger.info("Starting orchestrator...")

        if self.settings.init_default_agents:
            await self.registry.initialize_default_agents()

        if connect_messaging:
            await self._start_messaging()

        if run_jobs:
            self.tasks.extend([
                asyncio.create_task(
                    self._run_periodic("health-sweep", self.settings.health_sweep_interval, self.run_health_sweep)
                ),
                asyncio.create_task(
                    self._run_periodic("queue-drain", self.settings.queue_drain_interval, self.run_queue_drain)
                ),
                asyncio.create_task(
                    self._run_periodic(
                        "session-cleanup", self.settings.session_cleanup_interval, self.run_session_cleanup
                    )
                ),
            ])

        logger.info(f"Orchestrator is ready (messaging: {'on' if self.messaging_enabled else 'off'})")

    async def _start_messaging(self) -> None:
        if self.rabbitmq is None:
            self.rabbitmq = RabbitMQClient(
                host=self.settings.rabbitmq_host,
                port=self.settings.rabbitmq_port,
                user=self.settings.rabbitmq_user,
                password=self.settings.rabbitmq_password,
                max_retries=3,
                retry_delay=2
            )
        try:
            await self.rabbitmq.connect()
            await self.rabbitmq.setup_project_topology()
        except ConnectionError as e:
            logger.warning(f"RabbitMQ unavailable, running without agent messaging: {e}")
            return

        self.publisher = TaskEventPublisher(self.rabbitmq)
        self.orchestrator.publisher = self.publisher
        self.message_handler = AgentMessageHandler(self.registry, self.rabbitmq)
        await self.message_handler.start_consuming()

    async def _run_periodic(self, name: str, interval: float, job: Callable[[], Awaitable]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.error(f"Periodic job '{name}' failed: {e}", exc_info=True)

    async def run_health_sweep(self) -> List[Agent]:
        """Mark silent agents offline and reuse any capacity the recovery freed"""
        offline = await self.registry.health_sweep(self.settings.offline_threshold_ms)
        for agent in offline:
            if self.publisher is not None:
                try:
                    await self.publisher.publish_agent_offline(agent)
                except Exception as e:
                    logger.warning(f"Failed to publish agent_offline for {agent.id}: {e}")

        if any(agent.current_task_id for agent in offline):
            await self.run_queue_drain()
        return offline

    async def run_queue_drain(self) -> List[Task]:
        """Assign pending tasks one at a time until no assignment is possible"""
        assigned = []
        for _ in range(MAX_DRAIN_ASSIGNMENTS):
            task = await self.orchestrator.process_next_task()
            if task is None:
                break
            assigned.append(task)
        if assigned:
            logger.info(f"Queue drain assigned {len(assigned)} tasks")
        return assigned

    async def run_session_cleanup(self) -> int:
        return await self.orchestrator.cleanup_sessions(self.settings.session_retention_days)

    async def shutdown(self) -> None:
        """Gracefully shut down the service"""
        logger.info("Shutting down...")

        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

        await self.monitor.shutdown()
        await self.gateway.close()

        if self.rabbitmq:
            await self.rabbitmq.disconnect()

        logger.info("Shutdown complete")

    def signal_handler(self, sig, frame):
        logger.info(f"Received signal {sig}")
        self.shutdown_event.set()


async def main():
    service = OrchestratorService()

    signal.signal(signal.SIGINT, service.signal_handler)
    signal.signal(signal.SIGTERM, service.signal_handler)

    await service.start()
    try:
        await service.shutdown_event.wait()
    finally:
        await service.shutdown()


if __name__ == "__main__":
    load_dotenv()
    settings = OrchestratorSettings.from_env()
    setup_file_logger("orchestrator", log_level=settings.log_level, output_dir=settings.log_dir)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
