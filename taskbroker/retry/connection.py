"""
Redis connection management for the retry store.
"""

import logging

import redis.asyncio as redis

from taskbroker.config import get_settings
from taskbroker.exceptions import RetryStoreConfigError

logger = logging.getLogger(__name__)


class RedisConnection:
    """Lazily created, shared Redis client."""

    def __init__(
        self,
        url: str | None = None,
        host: str | None = None,
        port: int | None = None,
        password: str | None = None,
    ):
        settings = get_settings()

        self.url = url or settings.redis_url
        self.host = host or settings.redis_host
        self.port = port or settings.redis_port
        self.password = password or settings.redis_password
        self.client: redis.Redis | None = None

    def connect(self) -> redis.Redis:
        """
        Get the shared client, creating it on first use.

        The client connects lazily on its first command.

        Returns:
            redis.Redis: An asyncio Redis client returning ``str`` values.

        Raises:
            RetryStoreConfigError: If neither a URL nor host and port are configured.
        """
        if self.client is not None:
            return self.client

        if self.url:
            self.client = redis.from_url(
                self.url,
                decode_responses=True,
                health_check_interval=30,
            )
        elif self.host and self.port:
            self.client = redis.Redis(
                host=self.host,
                port=int(self.port),
                password=self.password,
                decode_responses=True,
                health_check_interval=30,
            )
        else:
            raise RetryStoreConfigError(
                "Redis config missing. Set REDIS_URL or REDIS_HOST + REDIS_PORT."
            )

        logger.info("Redis client created")
        return self.client

    async def disconnect(self) -> None:
        """Close the client and forget it."""
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            logger.info("Redis connection closed")
