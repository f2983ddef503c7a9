"""
Message Handlers - Agent registration and heartbeats over RabbitMQ

Consumes registration and heartbeat messages from agents and applies them to
the agent registry. Registrations are acknowledged on the message's
``reply_to`` queue with the assigned agent id.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from agents.shared.messaging import HEARTBEAT_QUEUE, REGISTRATION_QUEUE, RabbitMQClient
from agents.shared.schemas import (
    HeartbeatMessage,
    RegistrationAckMessage,
    RegistrationMessage,
)
from orchestrator.errors import NotFoundError, ValidationError
from orchestrator.registry import AgentRegistry

logger = logging.getLogger(__name__)


class AgentMessageHandler:
    """
    Handles agent registration and heartbeat messages.
    """

    def __init__(self, registry: AgentRegistry, rabbitmq: Optional[RabbitMQClient] = None):
        """
        Initialize message handler.

        Args:
            registry: AgentRegistry instance
            rabbitmq: RabbitMQ client used to consume and reply (optional in tests)
        """
        self.registry = registry
        self.rabbitmq = rabbitmq

    async def handle_registration(self, registration: RegistrationMessage) -> RegistrationAckMessage:
        """
        Register the agent described by a registration message.

        Args:
            registration: RegistrationMessage from an agent

        Returns:
            Acknowledgment carrying the new agent id, or a rejection
        """
        try:
            agent = await self.registry.register(
                registration.agent_name,
                registration.capabilities,
                registration.config
            )
        except ValidationError as e:
            logger.warning(f"Registration rejected for '{registration.agent_name}': {e}")
            return RegistrationAckMessage(
                agent_name=registration.agent_name,
                status="rejected",
                message=str(e)
            )

        return RegistrationAckMessage(
            agent_name=registration.agent_name,
            agent_id=agent.id,
            status="registered",
            message=f"Agent registered as {agent.id}"
        )

    async def handle_heartbeat(self, heartbeat: HeartbeatMessage) -> bool:
        """
        Refresh an agent's last activity time.

        Returns:
            True if the agent is known, False otherwise
        """
        try:
            await self.registry.heartbeat(heartbeat.agent_id)
        except NotFoundError:
            logger.warning(f"Heartbeat from unknown agent {heartbeat.agent_id}")
            return False
        return True

    async def _on_registration(self, message) -> None:
        async with message.process(requeue=False):
            try:
                registration = RegistrationMessage.from_json(message.body.decode())
            except PydanticValidationError as e:
                logger.error(f"Malformed registration message dropped: {e}")
                return

            ack = await self.handle_registration(registration)

            if message.reply_to:
                await self.rabbitmq.publish(
                    exchange_name="",
                    routing_key=message.reply_to,
                    message_body=ack.to_json(),
                    correlation_id=message.correlation_id
                )

    async def _on_heartbeat(self, message) -> None:
        async with message.process(requeue=False):
            try:
                heartbeat = HeartbeatMessage.from_json(message.body.decode())
            except PydanticValidationError as e:
                logger.error(f"Malformed heartbeat message dropped: {e}")
                return

            await self.handle_heartbeat(heartbeat)

    async def start_consuming(self) -> List[str]:
        """
        Start consuming registration and heartbeat queues.

        Returns:
            Consumer tags
        """
        if self.rabbitmq is None:
            raise RuntimeError("AgentMessageHandler has no RabbitMQ client")

        await self.rabbitmq.setup_orchestrator_queues()
        return [
            await self.rabbitmq.consume(REGISTRATION_QUEUE, self._on_registration),
            await self.rabbitmq.consume(HEARTBEAT_QUEUE, self._on_heartbeat),
        ]
