"""
Task publishing.

``TaskPublisher`` signs and publishes envelopes for one queue.
``PublisherRegistry`` owns one publisher per queue key and creates each
one, with its topology, exactly once.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractExchange
from pydantic import ValidationError

from taskbroker.broker.connection import BrokerConnection
from taskbroker.broker.signing import require_secret, sign_message
from taskbroker.broker.topology import assert_topology
from taskbroker.config import get_queue_config, get_settings
from taskbroker.constants import (
    CONTENT_TYPE_JSON,
    PRODUCER_HEADER,
    SIGNATURE_HEADER,
    SPAN_PUBLISH_TASK,
)
from taskbroker.exceptions import PublishValidationError
from taskbroker.observability.metrics import MetricsCollector, get_metrics
from taskbroker.observability.tracing import inject_trace_headers, task_span
from taskbroker.types.queue import QueueConfig
from taskbroker.types.task import PublishRequest, TaskEnvelope, dumps_canonical

logger = logging.getLogger(__name__)


class TaskPublisher:
    """Publishes signed task envelopes to one exchange and routing key."""

    def __init__(
        self,
        exchange: AbstractExchange,
        queue_config: QueueConfig,
        secret: str,
        producer: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.exchange = exchange
        self.queue_config = queue_config
        self.secret = require_secret(secret)
        self.producer = producer
        self._metrics = metrics or get_metrics()

    def build_message(self, envelope: TaskEnvelope) -> aio_pika.Message:
        """
        Serialize and sign an envelope into a persistent AMQP message.

        Args:
            envelope: The envelope to send.

        Returns:
            aio_pika.Message ready for publishing.
        """
        body = envelope.to_body()

        headers: dict[str, Any] = {SIGNATURE_HEADER: sign_message(body, self.secret)}
        if self.producer:
            headers[PRODUCER_HEADER] = self.producer
        inject_trace_headers(headers)

        return aio_pika.Message(
            body=dumps_canonical(body).encode("utf-8"),
            content_type=CONTENT_TYPE_JSON,
            delivery_mode=DeliveryMode.PERSISTENT,
            headers=headers,
            message_id=envelope.task_id,
        )

    async def publish(
        self,
        payload: Any,
        context: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> str:
        """
        Publish a new task.

        Args:
            payload: Task payload, carried unexamined.
            context: Task metadata; ``action`` selects the handler.
            retry_count: Retries the task has already been through.

        Returns:
            The generated task id.
        """
        envelope = TaskEnvelope.new(payload, context, retry_count)

        with task_span(
            SPAN_PUBLISH_TASK,
            envelope.task_id,
            queue=self.queue_config.queue,
            retry_count=retry_count,
        ):
            message = self.build_message(envelope)
            await self.exchange.publish(message, routing_key=self.queue_config.routing_key)

        self._metrics.record_published(self.queue_config.queue)

        logger.debug(
            "Task published",
            extra={
                "task_id": envelope.task_id,
                "exchange": self.queue_config.exchange,
                "routing_key": self.queue_config.routing_key,
            },
        )

        return envelope.task_id


class PublisherRegistry:
    """
    One ``TaskPublisher`` per queue key, created lazily.

    The create path is serialized by a lock, so concurrent first calls for
    the same key assert topology once and share a single publisher. Cached
    publishers are dropped when the underlying channel has been replaced.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        queues: Mapping[str, QueueConfig] | None = None,
        secret: str | None = None,
        producer: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the registry.

        Args:
            connection: Shared broker connection.
            queues: Queue configurations by key. Defaults to the configured queues.
            secret: Signing secret. Defaults to ``message_signing_secret``.
            producer: Value of the producer header. Defaults to ``service_name``.
            metrics: Metrics collector.
        """
        settings = get_settings()

        self.connection = connection
        self.queues = queues if queues is not None else settings.queues
        self.secret = require_secret(secret if secret is not None else settings.message_signing_secret)
        self.producer = producer if producer is not None else settings.service_name
        self._metrics = metrics or get_metrics()

        self._publishers: dict[str, TaskPublisher] = {}
        self._channel: AbstractChannel | None = None
        self._lock = asyncio.Lock()

    async def get_publisher(self, queue_key: str) -> TaskPublisher:
        """
        Get the publisher for a queue key, asserting topology on first use.

        Args:
            queue_key: Logical queue key.

        Returns:
            TaskPublisher: The cached publisher.

        Raises:
            QueueConfigError: If the key has no queue configuration.
            TopologyError: If topology cannot be asserted.
        """
        publisher = self._publishers.get(queue_key)
        if publisher is not None and self.connection.channel is self._channel:
            return publisher

        async with self._lock:
            channel = await self.connection.connect()
            if channel is not self._channel:
                self._publishers.clear()
                self._channel = channel

            publisher = self._publishers.get(queue_key)
            if publisher is not None:
                return publisher

            queue_config = get_queue_config(queue_key, self.queues)
            topology = await assert_topology(channel, queue_config)

            publisher = TaskPublisher(
                topology.exchange,
                queue_config,
                self.secret,
                producer=self.producer,
                metrics=self._metrics,
            )
            self._publishers[queue_key] = publisher

            logger.info(
                "Publisher registered",
                extra={"queue_key": queue_key, "queue": queue_config.queue},
            )
            return publisher

    async def publish_task(
        self,
        queue_key: str,
        payload: Any,
        context: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> str:
        """
        Validate arguments and publish a task.

        Args:
            queue_key: Logical queue key.
            payload: Task payload; must not be None.
            context: Task metadata.
            retry_count: Retries the task has already been through.

        Returns:
            The generated task id.

        Raises:
            PublishValidationError: If the arguments are invalid. Raised before any network I/O.
        """
        try:
            request = PublishRequest(
                queue_key=queue_key,
                payload=payload,
                context=context,
                retry_count=retry_count,
            )
        except ValidationError as e:
            raise PublishValidationError(f"Publish validation failed: {e}") from e

        publisher = await self.get_publisher(request.queue_key)
        return await publisher.publish(request.payload, request.context, request.retry_count)
