"""
Task consumption.

``BaseConsumer`` owns prefetch, JSON decoding and the ack/reject decision.
``SecureConsumer`` wraps it, verifying signatures and normalizing bodies
into ``TaskEnvelope`` before the business handler sees them.

Per delivery:
    received -> signature-checked -> {rejected | handler-invoked} -> {acked | rejected}

Rejected deliveries are not requeued; the broker routes them to the
dead-letter queue declared by the topology.
"""

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from taskbroker.broker.connection import BrokerConnection
from taskbroker.broker.signing import require_secret, verify_signature
from taskbroker.broker.topology import assert_topology
from taskbroker.config import get_queue_config, get_settings
from taskbroker.constants import SIGNATURE_HEADER, DeliveryOutcome
from taskbroker.exceptions import SignatureError
from taskbroker.observability.metrics import MetricsCollector, get_metrics
from taskbroker.observability.tracing import trace_context_from_headers
from taskbroker.types.queue import QueueConfig
from taskbroker.types.task import TaskEnvelope, TaskHandler

logger = logging.getLogger(__name__)

# Callback invoked with the parsed body and the transport headers
MessageCallback = Callable[[Any, dict[str, Any]], Awaitable[None]]


class BaseConsumer:
    """Subscribes to a queue and turns callback outcomes into ack or reject."""

    def __init__(
        self,
        channel: AbstractChannel,
        prefetch: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the consumer.

        Args:
            channel: An open channel.
            prefetch: Maximum unacknowledged deliveries in flight.
            metrics: Metrics collector.
        """
        self.channel = channel
        self.prefetch = prefetch if prefetch is not None else get_settings().consumer_prefetch
        self._metrics = metrics or get_metrics()

        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None

        self.channel.close_callbacks.add(self._on_channel_close)

    def _on_channel_close(self, sender: object, exc: BaseException | None = None) -> None:
        if exc is not None:
            logger.error(f"RabbitMQ channel error: {exc}")
        logger.warning("RabbitMQ channel closed")

    async def consume(self, queue_name: str, on_message: MessageCallback) -> str:
        """
        Start consuming a queue.

        Args:
            queue_name: Name of an already declared queue.
            on_message: Called with ``(body, headers)`` for every delivery.

        Returns:
            The consumer tag.
        """
        await self.channel.set_qos(prefetch_count=self.prefetch)

        queue = await self.channel.get_queue(queue_name)

        async def on_delivery(message: AbstractIncomingMessage | None) -> None:
            await self._process(queue_name, message, on_message)

        self._consumer_tag = await queue.consume(on_delivery)
        self._queue = queue

        return self._consumer_tag

    async def _process(
        self,
        queue_name: str,
        message: AbstractIncomingMessage | None,
        on_message: MessageCallback,
    ) -> None:
        # Consumer cancelled by the broker
        if message is None:
            return

        try:
            content = json.loads(message.body)
            await on_message(content, dict(message.headers or {}))
        except Exception as e:
            logger.error(
                f"Processing failed: {e}",
                extra={"queue": queue_name, "message_id": message.message_id},
            )
            await message.reject(requeue=False)
            self._metrics.record_delivery(queue_name, DeliveryOutcome.REJECTED)
            return

        await message.ack()
        self._metrics.record_delivery(queue_name, DeliveryOutcome.ACKED)

    async def cancel(self) -> None:
        """Stop consuming."""
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
        self._queue = None
        self._consumer_tag = None


class SecureConsumer:
    """Verifies message signatures before delegating to a handler."""

    def __init__(
        self,
        consumer: BaseConsumer,
        secret: str,
        metrics: MetricsCollector | None = None,
    ):
        self.consumer = consumer
        self.secret = require_secret(secret)
        self._metrics = metrics or get_metrics()

    async def consume(self, queue_name: str, handler: TaskHandler) -> str:
        """
        Start consuming a queue with signature verification.

        Args:
            queue_name: Name of an already declared queue.
            handler: Business handler, called with the normalized envelope.

        Returns:
            The consumer tag.
        """

        async def on_message(body: Any, headers: dict[str, Any]) -> None:
            if not isinstance(body, Mapping) or not verify_signature(
                body, headers.get(SIGNATURE_HEADER), self.secret
            ):
                self._metrics.record_signature_failure(queue_name)
                raise SignatureError("Invalid message signature")

            task = TaskEnvelope.model_validate(body)
            with trace_context_from_headers(headers):
                await handler(task)

        return await self.consumer.consume(queue_name, on_message)

    async def cancel(self) -> None:
        """Stop consuming."""
        await self.consumer.cancel()


async def start_consumer(
    connection: BrokerConnection,
    queue_key: str,
    handler: TaskHandler,
    prefetch: int | None = None,
    queues: Mapping[str, QueueConfig] | None = None,
    secret: str | None = None,
    metrics: MetricsCollector | None = None,
) -> SecureConsumer:
    """
    Assert topology for a queue key and start a secure consumer on it.

    Args:
        connection: Shared broker connection.
        queue_key: Logical queue key.
        handler: Business handler.
        prefetch: Maximum unacknowledged deliveries in flight.
        queues: Queue configurations by key. Defaults to the configured queues.
        secret: Signing secret. Defaults to ``message_signing_secret``.
        metrics: Metrics collector.

    Returns:
        SecureConsumer: The running consumer.

    Raises:
        QueueConfigError: If the key has no queue configuration.
        TopologyError: If topology cannot be asserted.
    """
    settings = get_settings()
    queue_config = get_queue_config(queue_key, queues)

    channel = await connection.connect()
    await assert_topology(channel, queue_config)

    consumer = SecureConsumer(
        BaseConsumer(channel, prefetch=prefetch, metrics=metrics),
        secret if secret is not None else settings.message_signing_secret,
        metrics=metrics,
    )
    await consumer.consume(queue_config.queue, handler)

    logger.info(
        f"Consumer started for queue {queue_config.queue}",
        extra={"queue": queue_config.queue, "prefetch": consumer.consumer.prefetch},
    )

    return consumer
