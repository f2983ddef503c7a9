"""
Task Event Publisher

Publishes task lifecycle events to the orchestrator.events exchange with
routing key ``task.<event_type>`` for dashboards and other listeners.
"""

import logging
from typing import Optional

from agents.shared.messaging import EVENTS_EXCHANGE, RabbitMQClient
from agents.shared.schemas import Agent, TaskEvent

logger = logging.getLogger(__name__)


class TaskEventPublisher:
    """
    Publishes TaskEvents over RabbitMQ.

    Event types: created, assigned, started, completed, failed, cancelled,
    recovered, agent_offline
    """

    def __init__(self, rabbitmq: RabbitMQClient, exchange_name: str = EVENTS_EXCHANGE):
        """
        Initialize event publisher.

        Args:
            rabbitmq: Connected RabbitMQ client with the events exchange declared
            exchange_name: Exchange to publish to
        """
        self.rabbitmq = rabbitmq
        self.exchange_name = exchange_name

    async def publish_event(self, event: TaskEvent) -> None:
        """
        Publish one lifecycle event.

        Args:
            event: TaskEvent to send (its task id is used as correlation id)
        """
        await self.rabbitmq.publish(
            exchange_name=self.exchange_name,
            routing_key=f"task.{event.event_type}",
            message_body=event.to_json(),
            correlation_id=event.task_id
        )
        logger.debug(f"Event published: {event.event_type} task={event.task_id} agent={event.agent_id}")

    async def publish_agent_offline(self, agent: Agent, message: Optional[str] = None) -> None:
        await self.publish_event(
            TaskEvent(
                event_type="agent_offline",
                task_id=agent.current_task_id,
                agent_id=agent.id,
                data={"agent_name": agent.name, "last_active_at": agent.last_active_at.isoformat()},
                message=message or f"Agent {agent.name} went offline",
            )
        )
