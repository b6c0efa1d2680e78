"""
RabbitMQ connection management.

One connection and one channel are shared by every publisher and consumer
in the process. A closed connection is forgotten so that the next
``connect()`` call builds a fresh one; there is no reconnect loop here.
"""

import asyncio
import logging

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection

from taskbroker.config import get_settings
from taskbroker.exceptions import BrokerConfigError

logger = logging.getLogger(__name__)


class BrokerConnection:
    """Lazily created, shared AMQP connection and channel."""

    def __init__(
        self,
        url: str | None = None,
        heartbeat: int | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize the connection holder.

        Args:
            url: AMQP URL. Defaults to the configured ``rabbitmq_url``.
            heartbeat: Heartbeat interval in seconds.
            timeout: Connection attempt timeout in seconds.
        """
        settings = get_settings()

        self.url = url or settings.rabbitmq_url
        self.heartbeat = heartbeat if heartbeat is not None else settings.rabbitmq_heartbeat
        self.timeout = timeout if timeout is not None else settings.rabbitmq_connection_timeout

        self.connection: AbstractConnection | None = None
        self.channel: AbstractChannel | None = None
        self._lock = asyncio.Lock()

    def _get_url(self) -> str:
        if not self.url or not self.url.strip():
            raise BrokerConfigError(
                "RabbitMQ URL not configured. Set RABBITMQ_URL environment variable."
            )
        return self.url.strip()

    async def connect(self) -> AbstractChannel:
        """
        Get the shared channel, connecting on first use.

        Returns:
            AbstractChannel: A ready-to-use channel.

        Raises:
            BrokerConfigError: If no broker URL is configured.
        """
        if self.channel is not None:
            return self.channel

        async with self._lock:
            if self.channel is not None:
                return self.channel

            url = self._get_url()

            logger.info(
                "Connecting to RabbitMQ",
                extra={"heartbeat": self.heartbeat, "timeout": self.timeout},
            )

            try:
                connection = await aio_pika.connect(
                    url,
                    timeout=self.timeout,
                    heartbeat=self.heartbeat,
                )
                connection.close_callbacks.add(self._on_connection_close)
                self.connection = connection

                self.channel = await connection.channel()
            except Exception as e:
                logger.error(f"Failed to connect to RabbitMQ: {e}")
                self.connection = None
                self.channel = None
                raise

            logger.info("RabbitMQ channel ready")
            return self.channel

    def _on_connection_close(self, sender: object, exc: BaseException | None = None) -> None:
        if exc is not None:
            logger.error(f"RabbitMQ connection error: {exc}")
        logger.warning("RabbitMQ connection closed")

        if sender is self.connection:
            self.connection = None
            self.channel = None

    async def close(self) -> None:
        """
        Close the channel, then the connection.

        Raises:
            Exception: The first failure while closing, after both handles
                have been closed.
        """
        channel, connection = self.channel, self.connection
        self.channel = None
        self.connection = None

        # The connection is closed even when the channel fails; the first error wins
        error: Exception | None = None

        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                logger.error(f"Error closing RabbitMQ channel: {e}")
                error = e

        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.error(f"Error closing RabbitMQ connection: {e}")
                error = error or e

        if error is not None:
            raise error

        logger.info("RabbitMQ connection closed cleanly")
