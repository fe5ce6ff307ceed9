"""
Wagon update consumer.

Pulls deliveries from the wagon update queue, drives the ingestion pipeline
and settles each delivery:

    | Pipeline outcome          | Redelivered? | Action                   |
    |---------------------------|--------------|--------------------------|
    | Success (incl. duplicate) | any          | ack                      |
    | Terminal failure          | any          | nack, dead-letter        |
    | Retryable failure         | no           | nack, requeue            |
    | Retryable failure         | yes          | nack, dead-letter        |
    | Undecodable body          | any          | nack, dead-letter        |
    | Unexpected exception      | no           | nack, requeue            |
    | Unexpected exception      | yes          | nack, dead-letter        |

A message is therefore retried at most once. In-flight deliveries are bounded
by the channel prefetch and by a semaphore of the same size.
"""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol

from aio_pika.abc import AbstractChannel, AbstractQueue

from railyard.core.logging import (
    LogContext,
    Timer,
    log_message_received,
    log_message_settled,
)
from railyard.core.models import ProcessingResult
from workers.broker import BrokerConnection

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    TERMINAL = "terminal"
    RETRYABLE = "retryable"
    DECODE_ERROR = "decode_error"
    UNEXPECTED = "unexpected"


class Action(str, Enum):
    ACK = "ack"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


class ConsumerState(str, Enum):
    IDLE = "idle"
    CONSUMING = "consuming"
    STOPPING = "stopping"


class Delivery(Protocol):
    """The parts of an aio-pika IncomingMessage the consumer touches."""

    body: bytes
    redelivered: Optional[bool]
    delivery_tag: Any

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool = True) -> None: ...


class UpdateProcessor(Protocol):
    async def process_update(self, message: Any) -> ProcessingResult: ...


def classify_result(result: ProcessingResult) -> DeliveryOutcome:
    if result.success:
        return DeliveryOutcome.SUCCESS
    if result.should_retry:
        return DeliveryOutcome.RETRYABLE
    return DeliveryOutcome.TERMINAL


def decide_action(outcome: DeliveryOutcome, redelivered: bool) -> Action:
    if outcome is DeliveryOutcome.SUCCESS:
        return Action.ACK
    if outcome in (DeliveryOutcome.RETRYABLE, DeliveryOutcome.UNEXPECTED) and not redelivered:
        return Action.REQUEUE
    return Action.DEAD_LETTER


def decode_body(body: bytes) -> dict:
    """
    Raises:
        ValueError: not UTF-8 JSON, nested too deeply to parse, or not a
            JSON object.
    """
    try:
        payload = json.loads(body.decode("utf-8"), parse_float=Decimal)
    except RecursionError as exc:
        raise ValueError("message body is nested too deeply") from exc
    if not isinstance(payload, dict):
        raise ValueError("message body is not a JSON object")
    return payload


class WagonUpdateConsumer:
    def __init__(
        self,
        broker: BrokerConnection,
        processor: UpdateProcessor,
        prefetch: Optional[int] = None,
    ) -> None:
        self._broker = broker
        self._processor = processor
        self.prefetch = prefetch or broker.settings.prefetch
        self._semaphore = asyncio.Semaphore(self.prefetch)
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._stop_requested = asyncio.Event()
        self.state = ConsumerState.IDLE

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # ------------------------------------------------------------------
    # Per-message handling
    # ------------------------------------------------------------------

    async def handle_delivery(self, message: Delivery) -> Action:
        """Process one delivery and settle it. Never raises for a bad message."""
        redelivered = bool(message.redelivered)
        self._in_flight += 1
        self._drained.clear()
        try:
            async with self._semaphore:
                with Timer() as timer:
                    log_message_received(logger, message.delivery_tag, redelivered)
                    outcome, event_id = await self._process(message.body)
                    action = decide_action(outcome, redelivered)
                    with LogContext(event_id=event_id):
                        await self._settle(message, action)
                        log_message_settled(
                            logger,
                            action.value,
                            outcome.value,
                            timer.elapsed_ms,
                            delivery_tag=message.delivery_tag,
                            redelivered=redelivered,
                        )
            return action
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._drained.set()

    async def _process(self, body: bytes) -> tuple[DeliveryOutcome, Optional[str]]:
        try:
            payload = decode_body(body)
        except ValueError as exc:
            logger.error("Failed to deserialize message: %s", exc)
            return DeliveryOutcome.DECODE_ERROR, None

        event_id = payload.get("eventId") if isinstance(payload.get("eventId"), str) else None
        try:
            result = await self._processor.process_update(payload)
        except Exception:
            logger.exception("Unexpected error processing message")
            return DeliveryOutcome.UNEXPECTED, event_id

        if not result.success:
            logger.warning(
                "Failed to process message: %s (retry=%s)",
                result.error_message,
                result.should_retry,
            )
        return classify_result(result), event_id

    async def _settle(self, message: Delivery, action: Action) -> None:
        try:
            if action is Action.ACK:
                await message.ack()
            else:
                await message.nack(requeue=action is Action.REQUEUE)
        except Exception:
            # The broker redelivers unsettled messages once the channel recovers.
            logger.exception("Failed to settle delivery %s as %s", message.delivery_tag, action.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open a QoS-limited channel, declare topology and begin consuming."""
        if self.state is not ConsumerState.IDLE:
            return
        self._stop_requested.clear()
        self._channel = await self._broker.channel(prefetch=self.prefetch)
        try:
            self._queue = await self._broker.declare_topology(self._channel)
            self._consumer_tag = await self._queue.consume(self.handle_delivery, no_ack=False)
        except Exception:
            await self._channel.close()
            self._channel = None
            self._queue = None
            raise
        self.state = ConsumerState.CONSUMING
        logger.info(
            "Started consuming messages from queue %s (prefetch=%s)",
            self._broker.settings.queue,
            self.prefetch,
        )

    async def run(self) -> None:
        """Consume until stop() is called. Control-loop failures propagate."""
        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting deliveries, let in-flight ones settle, close the channel."""
        if self.state is ConsumerState.IDLE:
            return
        self.state = ConsumerState.STOPPING
        self._stop_requested.set()

        try:
            if self._queue is not None and self._consumer_tag is not None:
                await self._queue.cancel(self._consumer_tag)
        finally:
            self._consumer_tag = None
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Shutdown timeout, %s deliveries still in flight", self._in_flight)

            if self._channel is not None and not self._channel.is_closed:
                await self._channel.close()
            self._channel = None
            self._queue = None
            self.state = ConsumerState.IDLE
            logger.info("Consumer stopped")
