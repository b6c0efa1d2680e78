"""
Delayed retries stored in a Redis sorted set.

Each queue gets one sorted set keyed ``<prefix>:<queue>``. Members are
serialized ``RetryRecord`` objects scored by their due time in epoch
milliseconds, so a range query by score returns due retries earliest first.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from taskbroker.config import get_settings
from taskbroker.constants import DEFAULT_RETRY_BATCH_SIZE
from taskbroker.observability.metrics import MetricsCollector, get_metrics
from taskbroker.types.task import RetryRecord, TaskEnvelope

logger = logging.getLogger(__name__)

# Returns the current time in epoch milliseconds
Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class RetryStore:
    """
    Exponential-backoff retry scheduling.

    With the defaults (``base_delay_ms=5000``, ``max_retries=5``) retries
    run 10s, 20s, 40s, 80s and 160s after each failure; a sixth retry is
    never scheduled.
    """

    def __init__(
        self,
        redis_client: Any,
        prefix: str | None = None,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the retry store.

        Args:
            redis_client: An asyncio Redis client with ``decode_responses=True``.
            prefix: Key namespace.
            max_retries: Highest retry number that is still scheduled.
            base_delay_ms: Base delay for the backoff formula.
            clock: Time source in epoch milliseconds.
            metrics: Metrics collector.
        """
        settings = get_settings()

        self.redis = redis_client
        self.prefix = prefix or settings.retry_prefix
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.base_delay_ms = (
            base_delay_ms if base_delay_ms is not None else settings.retry_base_delay_ms
        )
        self.clock = clock or now_ms
        self._metrics = metrics or get_metrics()

    def get_key(self, queue_name: str) -> str:
        """Namespaced sorted-set key for a queue."""
        return f"{self.prefix}:{queue_name}"

    def calculate_delay(self, retry_count: int) -> int:
        """
        Backoff delay in milliseconds: ``base_delay_ms * 2 ** retry_count``.

        Args:
            retry_count: The retry number being scheduled (1 for the first retry).
        """
        return self.base_delay_ms * 2**retry_count

    async def schedule_retry(self, queue_name: str, task: TaskEnvelope) -> bool:
        """
        Persist a failed task for delayed republishing.

        Args:
            queue_name: Queue key the task belongs to.
            task: The failed task.

        Returns:
            True if a retry was stored, False if the retry limit is exceeded.
        """
        retry_count = task.retry_count + 1

        if retry_count > self.max_retries:
            logger.warning(
                f"Max retries exceeded for task {task.task_id}",
                extra={"task_id": task.task_id, "queue": queue_name, "retry_count": retry_count},
            )
            self._metrics.record_retry_exhausted(queue_name)
            return False

        run_at = self.clock() + self.calculate_delay(retry_count)
        record = RetryRecord.from_envelope(task, retry_count=retry_count, next_retry_at=run_at)

        await self.redis.zadd(self.get_key(queue_name), {record.serialize(): run_at})

        self._metrics.record_retry_scheduled(queue_name)
        logger.debug(
            "Retry scheduled",
            extra={
                "task_id": task.task_id,
                "queue": queue_name,
                "retry_count": retry_count,
                "next_retry_at": run_at,
            },
        )
        return True

    async def fetch_due_retries(
        self,
        queue_name: str,
        limit: int = DEFAULT_RETRY_BATCH_SIZE,
    ) -> list[str]:
        """
        Get serialized retries whose due time has passed, earliest first.

        Args:
            queue_name: Queue key.
            limit: Maximum number of records to return.

        Returns:
            Serialized records, exactly as stored.
        """
        return await self.redis.zrangebyscore(
            self.get_key(queue_name),
            "-inf",
            self.clock(),
            start=0,
            num=limit,
        )

    async def remove_retry(self, queue_name: str, serialized: str) -> bool:
        """
        Remove a record by its exact serialized value.

        Args:
            queue_name: Queue key.
            serialized: The member text previously returned by ``fetch_due_retries``.

        Returns:
            True if the record was removed.
        """
        removed = await self.redis.zrem(self.get_key(queue_name), serialized)
        return bool(removed)

    async def pending_count(self, queue_name: str) -> int:
        """Number of retries stored for a queue, due or not."""
        return await self.redis.zcard(self.get_key(queue_name))

    async def ping(self) -> None:
        """Check that the store is reachable."""
        await self.redis.ping()
