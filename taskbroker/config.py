"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from collections.abc import Mapping
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskbroker.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PREFETCH,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_RETRY_BATCH_SIZE,
    DEFAULT_RETRY_POLL_INTERVAL_SECONDS,
    DEFAULT_RETRY_PREFIX,
    DEFAULT_WORKER_PREFETCH,
    ExchangeType,
)
from taskbroker.exceptions import QueueConfigError
from taskbroker.types.queue import QueueConfig


def default_queues() -> dict[str, QueueConfig]:
    """Queue definitions used when no QUEUES override is configured."""
    return {
        "EMAIL_TASKS": QueueConfig(
            queue="email.tasks",
            exchange="email.exchange",
            exchange_type=ExchangeType.DIRECT,
            routing_key="email.send",
            dlq="email.tasks.dlq",
        ),
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # RabbitMQ
    rabbitmq_url: str | None = None
    rabbitmq_heartbeat: int = 30  # detect dead connections within ~60s
    rabbitmq_connection_timeout: float = 10.0

    # Redis (retry store)
    redis_url: str | None = None
    redis_host: str | None = None
    redis_port: int | None = None
    redis_password: str | None = None

    # Message signing
    message_signing_secret: str = ""
    service_name: str = "taskbroker"

    # Queue topology, keyed by queue key. Override with a JSON QUEUES variable.
    queues: dict[str, QueueConfig] = Field(default_factory=default_queues)

    # Retry store
    retry_prefix: str = DEFAULT_RETRY_PREFIX
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_base_delay_ms: int = Field(default=DEFAULT_RETRY_BASE_DELAY_MS, ge=0)
    retry_poll_interval_seconds: float = DEFAULT_RETRY_POLL_INTERVAL_SECONDS
    retry_batch_size: int = DEFAULT_RETRY_BATCH_SIZE
    retry_reset_on_republish: bool = False

    # Consumer / Worker
    consumer_prefetch: int = DEFAULT_PREFETCH
    worker_name: str = "task-worker"
    worker_queue_key: str = "EMAIL_TASKS"
    worker_prefetch: int = DEFAULT_WORKER_PREFETCH

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "taskbroker"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_queue_config(
    queue_key: str,
    queues: Mapping[str, QueueConfig] | None = None,
) -> QueueConfig:
    """
    Look up the queue configuration for a queue key.

    Args:
        queue_key: Logical queue key, e.g. ``EMAIL_TASKS``.
        queues: Queue mapping to search. Defaults to the configured queues.

    Returns:
        QueueConfig: The matching configuration.

    Raises:
        QueueConfigError: If no configuration exists for the key.
    """
    if queues is None:
        queues = get_settings().queues
    queue_config = queues.get(queue_key)
    if queue_config is None:
        raise QueueConfigError(queue_key)
    return queue_config
