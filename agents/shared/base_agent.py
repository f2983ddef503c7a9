"""
Task Orchestration - Worker Agent Client

Worker processes use BaseAgent to register with the orchestrator over
RabbitMQ and keep their registration alive with periodic heartbeats. The
orchestrator marks an agent offline when heartbeats stop.
"""

import argparse
import asyncio
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv

from .file_logger import setup_file_logger
from .messaging import (
    HEARTBEAT_EXCHANGE,
    HEARTBEAT_ROUTING_KEY,
    REGISTER_EXCHANGE,
    REGISTER_ROUTING_KEY,
    RabbitMQClient,
)
from .schemas import (
    AgentCapability,
    AgentConfig,
    HeartbeatMessage,
    RegistrationAckMessage,
    RegistrationMessage,
)

logger = logging.getLogger(__name__)


class RegistrationRejected(Exception):
    """Raised when the orchestrator refuses an agent's registration"""


class BaseAgent:
    """
    Worker agent that registers with the orchestrator and sends heartbeats.

    Provides:
    - RabbitMQ connection
    - Self-registration with an acknowledged agent id
    - Heartbeat loop
    """

    def __init__(
        self,
        agent_name: str,
        capabilities: List[AgentCapability],
        config: Optional[AgentConfig] = None,
        heartbeat_interval: float = 30.0,
        rabbitmq: Optional[RabbitMQClient] = None
    ):
        """
        Initialize agent.

        Args:
            agent_name: Display name sent in the registration
            capabilities: Capabilities advertised to the orchestrator
            config: Optional agent config (concurrency, accepted task types)
            heartbeat_interval: Seconds between heartbeats
            rabbitmq: Pre-built RabbitMQ client (created on initialize otherwise)
        """
        self.agent_name = agent_name
        self.capabilities = list(capabilities)
        self.config = config or AgentConfig()
        self.heartbeat_interval = heartbeat_interval
        self.rabbitmq = rabbitmq

        self.agent_id: Optional[str] = None
        self.reply_queue_name: Optional[str] = None
        self._ack_future: Optional[asyncio.Future] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def registered(self) -> bool:
        return self.agent_id is not None

    async def initialize(self) -> None:
        """Connect to RabbitMQ and declare the agent's reply queue"""
        if self.rabbitmq is None:
            self.rabbitmq = RabbitMQClient()
        if not self.rabbitmq.is_connected:
            await self.rabbitmq.connect()
        await self.rabbitmq.setup_project_topology()

        reply_queue = await self.rabbitmq.declare_queue("", durable=False, exclusive=True, auto_delete=True)
        self.reply_queue_name = reply_queue.name
        await self.rabbitmq.consume(self.reply_queue_name, self._handle_reply)

        logger.info(f"Agent '{self.agent_name}' initialized (reply queue: {self.reply_queue_name})")

    async def _handle_reply(self, message) -> None:
        async with message.process():
            ack = RegistrationAckMessage.from_json(message.body.decode())
            if self._ack_future is not None and not self._ack_future.done():
                self._ack_future.set_result(ack)

    async def register(self, timeout: float = 10.0) -> str:
        """
        Register with the orchestrator and wait for the acknowledgment.

        Args:
            timeout: Seconds to wait for the acknowledgment

        Returns:
            The agent id assigned by the orchestrator

        Raises:
            RegistrationRejected: If the orchestrator rejects the registration
            asyncio.TimeoutError: If no acknowledgment arrives in time
        """
        self._ack_future = asyncio.get_running_loop().create_future()

        registration = RegistrationMessage(
            agent_name=self.agent_name,
            capabilities=self.capabilities,
            config=self.config
        )
        await self.rabbitmq.publish(
            exchange_name=REGISTER_EXCHANGE,
            routing_key=REGISTER_ROUTING_KEY,
            message_body=registration.to_json(),
            reply_to=self.reply_queue_name
        )
        logger.info(f"Registration sent for agent '{self.agent_name}'")

        ack = await asyncio.wait_for(self._ack_future, timeout=timeout)
        if ack.status != "registered" or not ack.agent_id:
            raise RegistrationRejected(ack.message)

        self.agent_id = ack.agent_id
        logger.info(f"Agent '{self.agent_name}' registered as {self.agent_id}")
        return self.agent_id

    async def send_heartbeat(self) -> None:
        if not self.registered:
            raise RuntimeError("Agent is not registered")
        await self.rabbitmq.publish(
            exchange_name=HEARTBEAT_EXCHANGE,
            routing_key=HEARTBEAT_ROUTING_KEY,
            message_body=HeartbeatMessage(agent_id=self.agent_id).to_json()
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await self.send_heartbeat()
            except Exception as e:
                logger.warning(f"Heartbeat failed for agent {self.agent_id}: {e}")
            await asyncio.sleep(self.heartbeat_interval)

    async def start(self) -> None:
        """Initialize, register and start sending heartbeats"""
        await self.initialize()
        await self.register()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self.rabbitmq:
            await self.rabbitmq.disconnect()
        logger.info(f"Agent '{self.agent_name}' stopped")


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run a worker agent that registers with the orchestrator")
    parser.add_argument("name", help="Agent name")
    parser.add_argument(
        "--capability", "-c",
        action="append",
        required=True,
        choices=[c.value for c in AgentCapability],
        help="Capability (repeatable)"
    )
    parser.add_argument("--heartbeat-interval", type=float, default=30.0)
    args = parser.parse_args()

    setup_file_logger(f"agent-{args.name.lower()}", log_level=os.getenv("LOG_LEVEL", "INFO"))

    agent = BaseAgent(
        args.name,
        [AgentCapability(c) for c in args.capability],
        heartbeat_interval=args.heartbeat_interval
    )
    try:
        asyncio.run(agent.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
