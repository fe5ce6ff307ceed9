from __future__ import annotations

from dataclasses import dataclass

from railyard.config import Settings


@dataclass(frozen=True)
class BrokerSettings:
    """Broker subset of the shared application settings."""

    url: str
    queue: str
    dead_letter_queue: str
    exchange: str
    dead_letter_exchange: str
    prefetch: int = 10
    durable: bool = True
    reconnect_interval: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrokerSettings":
        return cls(
            url=settings.rabbitmq_url,
            queue=settings.RABBITMQ_QUEUE,
            dead_letter_queue=settings.RABBITMQ_DLQ,
            exchange=settings.RABBITMQ_EXCHANGE,
            dead_letter_exchange=settings.RABBITMQ_DLX,
            prefetch=settings.RABBITMQ_PREFETCH,
            durable=settings.RABBITMQ_DURABLE,
            reconnect_interval=settings.RABBITMQ_RECONNECT_INTERVAL,
        )

    @property
    def routing_key(self) -> str:
        return self.queue

    @property
    def dead_letter_routing_key(self) -> str:
        return self.dead_letter_queue

