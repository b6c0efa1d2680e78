"""
Retry poller for republishing due retries.

The poller runs alongside the consumer and, on a fixed interval, moves
due records from the retry store back onto the broker as brand-new tasks.
"""

import asyncio
import logging

from pydantic import ValidationError

from taskbroker.broker.publisher import PublisherRegistry
from taskbroker.config import get_settings
from taskbroker.constants import SPAN_REPUBLISH_RETRY
from taskbroker.exceptions import PublishValidationError
from taskbroker.observability.metrics import MetricsCollector, get_metrics
from taskbroker.observability.tracing import task_span
from taskbroker.retry.store import RetryStore
from taskbroker.types.task import RetryRecord

logger = logging.getLogger(__name__)


class RetryPoller:
    """
    Periodically republishes due retries for one queue.

    Each tick:
    1. Fetch up to ``batch_size`` due records, earliest first
    2. Publish each payload/context as a new task (fresh task id)
    3. Remove the record from the store

    Ticks are separated by a fixed delay measured from the end of the
    previous tick, so a slow tick pushes every later tick back.

    Removal is not transactional with the publish: a crash between the two
    republishes the record again on the next tick. Records that cannot be
    parsed or published are dropped.
    """

    def __init__(
        self,
        queue_key: str,
        retry_store: RetryStore,
        publishers: PublisherRegistry,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        reset_retry_count: bool | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the poller.

        Args:
            queue_key: Queue key whose retries are republished.
            retry_store: Store to read due retries from.
            publishers: Registry used to republish.
            interval_seconds: Delay in seconds from the end of one tick to the
                start of the next.
            batch_size: Maximum records handled per tick.
            reset_retry_count: Republish with a zero retry count, restarting
                the backoff schedule on every cycle.
            metrics: Metrics collector.
        """
        settings = get_settings()

        self.queue_key = queue_key
        self.retry_store = retry_store
        self.publishers = publishers
        self.interval = interval_seconds or settings.retry_poll_interval_seconds
        self.batch_size = batch_size or settings.retry_batch_size
        self.reset_retry_count = (
            reset_retry_count
            if reset_retry_count is not None
            else settings.retry_reset_on_republish
        )
        self._running = False
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the poller loop."""
        logger.info(
            f"Retry poller starting with interval {self.interval}s",
            extra={"queue_key": self.queue_key},
        )
        self._running = True

        while self._running:
            await asyncio.sleep(self.interval)

            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Poller error: {e}", extra={"queue_key": self.queue_key})

        logger.info("Retry poller stopped", extra={"queue_key": self.queue_key})

    async def stop(self) -> None:
        """Stop the poller after the current tick."""
        self._running = False

    async def run_once(self) -> int:
        """
        Run a single poller tick.

        Returns:
            Number of retries republished.
        """
        due = await self.retry_store.fetch_due_retries(self.queue_key, self.batch_size)
        republished = 0

        for serialized in due:
            try:
                record = RetryRecord.parse(serialized)
            except ValidationError as e:
                logger.error(
                    f"Dropping unreadable retry record: {e}",
                    extra={"queue_key": self.queue_key},
                )
                await self.retry_store.remove_retry(self.queue_key, serialized)
                continue

            retry_count = 0 if self.reset_retry_count else record.retry_count

            with task_span(
                SPAN_REPUBLISH_RETRY,
                record.task_id,
                queue=self.queue_key,
                retry_count=record.retry_count,
            ):
                try:
                    task_id = await self.publishers.publish_task(
                        self.queue_key,
                        record.payload,
                        record.context,
                        retry_count=retry_count,
                    )
                except PublishValidationError as e:
                    logger.error(
                        f"Dropping unpublishable retry record: {e}",
                        extra={"queue_key": self.queue_key, "task_id": record.task_id},
                    )
                    await self.retry_store.remove_retry(self.queue_key, serialized)
                    continue

            await self.retry_store.remove_retry(self.queue_key, serialized)

            republished += 1
            self._metrics.record_retries_republished(self.queue_key)

            logger.info(
                "Due retry republished",
                extra={
                    "queue_key": self.queue_key,
                    "original_task_id": record.task_id,
                    "task_id": task_id,
                    "retry_count": record.retry_count,
                },
            )

        self._metrics.update_retries_pending(
            self.queue_key, await self.retry_store.pending_count(self.queue_key)
        )

        return republished
