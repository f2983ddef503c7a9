"""
Task Orchestration - RabbitMQ Messaging Utilities

Agents announce themselves and send heartbeats through the register and
heartbeat exchanges; the orchestrator broadcasts task lifecycle events on
the events exchange. All three are durable topic exchanges.
"""

import os
import asyncio
import logging
from typing import Optional, Callable, Dict, Tuple
from aio_pika import connect_robust, Message, ExchangeType
from aio_pika.abc import AbstractConnection, AbstractChannel, AbstractExchange, AbstractQueue

logger = logging.getLogger(__name__)

REGISTER_EXCHANGE = "orchestrator.register"
HEARTBEAT_EXCHANGE = "agents.heartbeat"
EVENTS_EXCHANGE = "orchestrator.events"

REGISTRATION_QUEUE = "orchestrator.registrations"
HEARTBEAT_QUEUE = "orchestrator.heartbeats"

REGISTER_ROUTING_KEY = "agent.register"
HEARTBEAT_ROUTING_KEY = "agent.heartbeat"

PROJECT_EXCHANGES = (REGISTER_EXCHANGE, HEARTBEAT_EXCHANGE, EVENTS_EXCHANGE)

# queue -> (exchange, binding pattern)
ORCHESTRATOR_BINDINGS: Dict[str, Tuple[str, str]] = {
    REGISTRATION_QUEUE: (REGISTER_EXCHANGE, "agent.#"),
    HEARTBEAT_QUEUE: (HEARTBEAT_EXCHANGE, "agent.#"),
}


class RabbitMQClient:
    """
    Thin async wrapper over an aio-pika robust connection.

    Exchanges and queues are cached by name once declared so publishers and
    consumers can refer to them without holding aio-pika objects.
    """

    def __init__(
        self,
        host: str = None,
        port: int = None,
        user: str = None,
        password: str = None,
        vhost: str = None,
        max_retries: int = 5,
        retry_delay: int = 5
    ):
        """
        Args:
            host, port, user, password, vhost: Broker address and credentials;
                each falls back to its RABBITMQ_* environment variable
            max_retries: How many times connect() tries before giving up
            retry_delay: Seconds to wait between connect attempts
        """
        self.host = host or os.getenv("RABBITMQ_HOST", "localhost")
        self.port = port or int(os.getenv("RABBITMQ_PORT", "5672"))
        self.user = user or os.getenv("RABBITMQ_USER", "guest")
        self.password = password or os.getenv("RABBITMQ_PASSWORD", "guest")
        self.vhost = vhost or os.getenv("RABBITMQ_VHOST", "/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchanges: Dict[str, AbstractExchange] = {}
        self.queues: Dict[str, AbstractQueue] = {}

    @property
    def connection_url(self) -> str:
        return f"amqp://{self.user}:{self.password}@{self.host}:{self.port}/{self.vhost}"

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    def _require_channel(self) -> AbstractChannel:
        if self.channel is None:
            raise RuntimeError("RabbitMQ channel is not open; call connect() first")
        return self.channel

    async def connect(self) -> None:
        """
        Open the connection and a channel with prefetch 10.

        Raises:
            ConnectionError: When the broker stays unreachable for max_retries attempts
        """
        failure = None

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(f"Opening broker connection to {self.host}:{self.port} ({attempt}/{self.max_retries})")
                self.connection = await connect_robust(self.connection_url, timeout=10)
                self.channel = await self.connection.channel()
                await self.channel.set_qos(prefetch_count=10)
                logger.info("Broker connection ready")
                return
            except Exception as e:
                failure = e
                logger.warning(f"Broker unreachable on attempt {attempt}: {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        message = f"Failed to connect to RabbitMQ after {self.max_retries} attempts: {failure}"
        logger.error(message)
        raise ConnectionError(message)

    async def disconnect(self) -> None:
        if not self.is_connected:
            return
        await self.connection.close()
        self.channel = None
        logger.info("Broker connection closed")

    async def declare_exchange(
        self,
        name: str,
        exchange_type: ExchangeType = ExchangeType.TOPIC,
        durable: bool = True
    ) -> AbstractExchange:
        cached = self.exchanges.get(name)
        if cached is not None:
            return cached

        declared = await self._require_channel().declare_exchange(name, exchange_type, durable=durable)
        self.exchanges[name] = declared
        logger.debug(f"Exchange ready: {name} [{exchange_type.value}]")
        return declared

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False
    ) -> AbstractQueue:
        """
        Declare a queue and cache it under the name the broker assigned.

        Pass an empty name to get a server-named queue (used for replies).
        """
        if name in self.queues:
            return self.queues[name]

        declared = await self._require_channel().declare_queue(
            name, durable=durable, exclusive=exclusive, auto_delete=auto_delete
        )
        self.queues[declared.name] = declared
        logger.debug(f"Queue ready: {declared.name} (durable={durable})")
        return declared

    async def bind_queue(self, queue_name: str, exchange_name: str, routing_key: str = "") -> None:
        queue = self.queues.get(queue_name)
        exchange = self.exchanges.get(exchange_name)
        if queue is None:
            raise ValueError(f"Queue {queue_name} not declared")
        if exchange is None:
            raise ValueError(f"Exchange {exchange_name} not declared")

        await queue.bind(exchange, routing_key=routing_key)
        logger.debug(f"{queue_name} <- {exchange_name} [{routing_key}]")

    def _resolve_exchange(self, exchange_name: str) -> AbstractExchange:
        # "" addresses the default exchange, which routes by queue name
        if not exchange_name:
            return self._require_channel().default_exchange
        try:
            return self.exchanges[exchange_name]
        except KeyError:
            raise ValueError(f"Exchange {exchange_name} not declared") from None

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        message_body: str,
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        content_type: str = "application/json"
    ) -> None:
        """
        Send a JSON body to an exchange.

        Args:
            exchange_name: Declared exchange, or "" for direct-to-queue delivery
            routing_key: Topic key, or the queue name on the default exchange
            message_body: Serialized message
            correlation_id: Ties a reply back to its request
            reply_to: Queue that should receive the reply
            content_type: MIME type stamped on the message
        """
        exchange = self._resolve_exchange(exchange_name)
        await exchange.publish(
            Message(
                body=message_body.encode(),
                content_type=content_type,
                correlation_id=correlation_id,
                reply_to=reply_to
            ),
            routing_key=routing_key
        )
        logger.debug(f"-> {exchange_name or '(default)'} [{routing_key}]")

    async def consume(self, queue_name: str, callback: Callable, auto_ack: bool = False) -> str:
        """Attach an async callback to a declared queue and return the consumer tag"""
        queue = self.queues.get(queue_name)
        if queue is None:
            raise ValueError(f"Queue {queue_name} not declared")

        tag = await queue.consume(callback, no_ack=auto_ack)
        logger.info(f"Consuming {queue_name} ({tag})")
        return tag

    async def setup_project_topology(self) -> None:
        """Declare the register, heartbeat and events exchanges"""
        for name in PROJECT_EXCHANGES:
            await self.declare_exchange(name, ExchangeType.TOPIC)
        logger.info(f"Declared {len(PROJECT_EXCHANGES)} project exchanges")

    async def setup_orchestrator_queues(self) -> None:
        """Declare the registration and heartbeat queues and bind them to their exchanges"""
        for queue_name, (exchange_name, pattern) in ORCHESTRATOR_BINDINGS.items():
            await self.declare_queue(queue_name)
            await self.bind_queue(queue_name, exchange_name, pattern)


async def create_rabbitmq_client(**kwargs) -> RabbitMQClient:
    """Build a client from kwargs, connect it and declare the project exchanges"""
    client = RabbitMQClient(**kwargs)
    await client.connect()
    await client.setup_project_topology()
    return client
