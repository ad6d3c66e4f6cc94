"""RabbitMQ event publishing for optimization run lifecycle."""

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
import structlog

from ..config import get_settings

logger = structlog.get_logger(__name__)


# Event routing keys
class Events:
    """RabbitMQ event routing keys."""

    # Run lifecycle
    OPTIMIZATION_STARTED = "optimization.started"
    OPTIMIZATION_COMPLETED = "optimization.completed"

    # Fork lifecycle
    FORK_CREATED = "fork.created"
    FORK_FALLBACK = "fork.fallback"
    FORK_DELETED = "fork.deleted"

    # Strategy outcomes
    STRATEGY_COMPLETED = "strategy.completed"
    STRATEGY_FAILED = "strategy.failed"

    # Promotion
    PROMOTION_COMPLETED = "promotion.completed"
    PROMOTION_FAILED = "promotion.failed"


class MessageBroker:
    """RabbitMQ publisher for orchestrator events."""

    def __init__(self) -> None:
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._settings = get_settings()

    async def connect(self) -> None:
        """Establish connection to RabbitMQ."""
        if self._connection is not None:
            return

        self._connection = await aio_pika.connect_robust(
            self._settings.rabbitmq.url,
        )
        self._channel = await self._connection.channel()

        self._exchange = await self._channel.declare_exchange(
            self._settings.rabbitmq.exchange_name,
            ExchangeType(self._settings.rabbitmq.exchange_type),
            durable=True,
        )

        logger.info(
            "Connected to RabbitMQ",
            exchange=self._settings.rabbitmq.exchange_name,
        )

    async def disconnect(self) -> None:
        """Close connection to RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            logger.info("Disconnected from RabbitMQ")

    async def publish(
        self,
        routing_key: str,
        body: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None:
        """Publish a message to the exchange.

        Args:
            routing_key: Routing key for the message (e.g., "fork.created")
            body: Message body as dictionary
            correlation_id: Optional correlation ID, usually the run ID
        """
        if self._exchange is None:
            await self.connect()

        message = Message(
            body=json.dumps(body, default=str).encode(),
            content_type="application/json",
            correlation_id=correlation_id,
        )

        await self._exchange.publish(message, routing_key=routing_key)
        logger.debug("Published message", routing_key=routing_key, correlation_id=correlation_id)


# Global broker instance
_broker: MessageBroker | None = None


def get_broker() -> MessageBroker:
    """Get the global message broker instance."""
    global _broker
    if _broker is None:
        _broker = MessageBroker()
    return _broker


async def publish_event(
    routing_key: str,
    body: dict[str, Any],
    correlation_id: str | None = None,
) -> None:
    """Convenience function to publish an event.

    Automatically adds event_id (UUID), timestamp and source if not present.

    Args:
        routing_key: Event routing key
        body: Event payload
        correlation_id: Optional correlation ID
    """
    if "event_id" not in body or not body["event_id"]:
        body["event_id"] = str(uuid.uuid4())

    if "timestamp" not in body:
        body["timestamp"] = datetime.now(timezone.utc).isoformat()

    if "source" not in body:
        body["source"] = "paralleldb"

    broker = get_broker()
    await broker.publish(routing_key, body, correlation_id)


async def emit(
    routing_key: str,
    body: dict[str, Any],
    correlation_id: str | None = None,
) -> None:
    """Publish an event if events are enabled, logging broker errors.

    Used from the orchestrator, where a lost event must never fail a run.
    """
    if not get_settings().rabbitmq.enabled:
        return

    try:
        await publish_event(routing_key, body, correlation_id)
    except Exception as e:
        logger.warning(
            "Failed to publish event",
            routing_key=routing_key,
            correlation_id=correlation_id,
            error=str(e),
        )


@asynccontextmanager
async def message_broker() -> AsyncGenerator[MessageBroker | None, None]:
    """Context manager for message broker lifecycle (no-op when disabled)."""
    if not get_settings().rabbitmq.enabled:
        yield None
        return

    broker = get_broker()
    await broker.connect()
    try:
        yield broker
    finally:
        await broker.disconnect()
