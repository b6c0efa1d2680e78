"""
Exchange, queue and dead-letter declarations.
"""

import logging
from dataclasses import dataclass

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

from taskbroker.constants import (
    DEAD_LETTER_EXCHANGE_ARG,
    DEAD_LETTER_ROUTING_KEY_ARG,
    DEFAULT_EXCHANGE,
)
from taskbroker.exceptions import TopologyError
from taskbroker.types.queue import QueueConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topology:
    """Handles to the declared broker objects for one queue."""

    exchange: AbstractExchange
    queue: AbstractQueue
    dead_letter_queue: AbstractQueue


async def assert_topology(channel: AbstractChannel, config: QueueConfig) -> Topology:
    """
    Declare the exchange, dead-letter queue, main queue and binding.

    Declarations are idempotent on the broker side, so this is safe to call
    on every startup. Rejected deliveries on the main queue are routed
    through the default exchange to the dead-letter queue.

    Args:
        channel: An open channel.
        config: The queue configuration to assert.

    Returns:
        Topology: The declared exchange and queues.

    Raises:
        TopologyError: If any declaration fails, e.g. an exchange type mismatch.
    """
    extra = {"queue": config.queue, "exchange": config.exchange, "dlq": config.dlq}

    try:
        logger.info("Declaring exchange", extra=extra)
        exchange = await channel.declare_exchange(
            config.exchange,
            aio_pika.ExchangeType(config.exchange_type.value),
            durable=True,
        )

        logger.info("Declaring dead-letter queue", extra=extra)
        dead_letter_queue = await channel.declare_queue(config.dlq, durable=True)

        logger.info("Declaring main queue", extra=extra)
        queue = await channel.declare_queue(
            config.queue,
            durable=True,
            arguments={
                DEAD_LETTER_EXCHANGE_ARG: DEFAULT_EXCHANGE,
                DEAD_LETTER_ROUTING_KEY_ARG: config.dlq,
            },
        )

        logger.info("Binding queue", extra={**extra, "routing_key": config.routing_key})
        await queue.bind(exchange, routing_key=config.routing_key)
    except Exception as e:
        raise TopologyError(f"Failed to assert topology for queue {config.queue}: {e}") from e

    logger.info("Topology asserted", extra=extra)
    return Topology(exchange=exchange, queue=queue, dead_letter_queue=dead_letter_queue)
