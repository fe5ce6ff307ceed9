"""
Broker connection lifecycle.

One BrokerConnection is built at process start and injected wherever the
broker is needed. The physical connection is established lazily under an
asyncio.Lock, so concurrent first callers share a single connect. The
connection is an aio-pika robust connection: after a network loss it
reconnects on its own and restores channels, QoS and consumers.

Topology (direct exchanges, durable by default):

    rail.exchange      --rail.wagon.updates-->      rail.wagon.updates
    rail.exchange.dlq  --rail.wagon.updates.dlq-->  rail.wagon.updates.dlq

The main queue dead-letters into the DLX, so ``nack(requeue=False)`` lands a
message in the dead letter queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractQueue,
    AbstractRobustConnection,
)

from workers.settings import BrokerSettings

logger = logging.getLogger(__name__)

ConnectFactory = Callable[..., Awaitable[AbstractRobustConnection]]


class BrokerConnection:
    def __init__(
        self,
        settings: BrokerSettings,
        connect: ConnectFactory = aio_pika.connect_robust,
    ) -> None:
        self.settings = settings
        self._connect = connect
        self._connection: Optional[AbstractRobustConnection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> AbstractRobustConnection:
        """Return the shared connection, establishing it once."""
        if self.is_connected:
            return self._connection  # type: ignore[return-value]

        async with self._lock:
            if self.is_connected:
                return self._connection  # type: ignore[return-value]

            self._connection = await self._connect(
                self.settings.url,
                reconnect_interval=self.settings.reconnect_interval,
            )
            logger.info("RabbitMQ connection established")
            return self._connection

    async def channel(self, prefetch: Optional[int] = None) -> AbstractChannel:
        """Open a channel; with ``prefetch`` set, apply QoS before returning it."""
        connection = await self.connect()
        channel = await connection.channel()
        if prefetch is not None:
            await channel.set_qos(prefetch_count=prefetch)
        return channel

    async def declare_topology(self, channel: Optional[AbstractChannel] = None) -> AbstractQueue:
        """Declare exchanges, queues and bindings. Returns the main queue."""
        own_channel = channel is None
        if channel is None:
            channel = await self.channel()

        s = self.settings
        try:
            exchange = await channel.declare_exchange(
                s.exchange, aio_pika.ExchangeType.DIRECT, durable=True
            )
            dead_letter_exchange = await channel.declare_exchange(
                s.dead_letter_exchange, aio_pika.ExchangeType.DIRECT, durable=True
            )

            queue = await channel.declare_queue(
                s.queue,
                durable=s.durable,
                arguments={
                    "x-dead-letter-exchange": s.dead_letter_exchange,
                    "x-dead-letter-routing-key": s.dead_letter_routing_key,
                },
            )
            dead_letter_queue = await channel.declare_queue(s.dead_letter_queue, durable=s.durable)

            await queue.bind(exchange, routing_key=s.routing_key)
            await dead_letter_queue.bind(dead_letter_exchange, routing_key=s.dead_letter_routing_key)
        finally:
            if own_channel:
                await channel.close()

        logger.info("RabbitMQ queues and exchanges configured")
        return queue

    async def publish(
        self,
        payload: Union[Mapping[str, Any], bytes],
        routing_key: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> str:
        """Publish a persistent message to the main exchange. Returns its message id."""
        body = payload if isinstance(payload, bytes) else json.dumps(payload, default=str).encode()
        message_id = message_id or str(uuid.uuid4())
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message_id,
            timestamp=datetime.now(timezone.utc),
        )

        channel = await self.channel()
        try:
            exchange: AbstractExchange = await channel.get_exchange(self.settings.exchange)
            await exchange.publish(message, routing_key=routing_key or self.settings.routing_key)
        finally:
            await channel.close()

        logger.debug("Message published: %s", message_id)
        return message_id

    async def close(self) -> None:
        async with self._lock:
            if self._connection is not None and not self._connection.is_closed:
                await self._connection.close()
                logger.info("RabbitMQ connection closed")
            self._connection = None
