"""
Worker process for executing tasks.

The worker consumes signed tasks from one queue, routes each to the handler
registered for its action, and schedules failed tasks for delayed retry
while the broker dead-letters the failed delivery.
"""

import asyncio
import contextlib
import logging
import os
import signal
import sys
import time
from collections.abc import Callable, Mapping
from types import TracebackType
from typing import Any

from taskbroker.broker.connection import BrokerConnection
from taskbroker.broker.consumer import SecureConsumer, start_consumer
from taskbroker.broker.publisher import PublisherRegistry
from taskbroker.config import get_settings
from taskbroker.constants import SPAN_HANDLE_TASK
from taskbroker.observability.logging import bind_context, setup_logging
from taskbroker.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from taskbroker.observability.tracing import setup_tracing, task_span
from taskbroker.retry.connection import RedisConnection
from taskbroker.retry.store import RetryStore
from taskbroker.types.queue import QueueConfig
from taskbroker.types.task import TaskEnvelope, TaskHandler
from taskbroker.worker.handlers import HandlerRegistry, register_builtin_handlers
from taskbroker.worker.poller import RetryPoller

logger = logging.getLogger(__name__)


class Worker:
    """
    Task worker bound to a single queue.

    Features:
    - Prefetch-bounded consumption with signature verification
    - Action-based routing to registered handlers
    - Failed tasks are dead-lettered and stored for exponential-backoff retry
    - Retry poller republishing due retries
    - Any unhandled fault, SIGTERM or SIGINT exits the process
    """

    def __init__(
        self,
        name: str | None = None,
        queue_key: str | None = None,
        prefetch: int | None = None,
        queues: Mapping[str, QueueConfig] | None = None,
        connection: BrokerConnection | None = None,
        retry_store: RetryStore | None = None,
        publishers: PublisherRegistry | None = None,
        handlers: HandlerRegistry | None = None,
        poll_interval: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            name: Worker name used in logs.
            queue_key: Queue key to consume and retry on.
            prefetch: Maximum unacknowledged deliveries in flight.
            queues: Queue configurations by key. Defaults to the configured queues.
            connection: Shared broker connection.
            retry_store: Retry store. Defaults to one backed by the configured Redis.
            publishers: Publisher registry used by the retry poller.
            handlers: Handler registry.
            poll_interval: Seconds between retry poller ticks.
            metrics: Metrics collector.
        """
        settings = get_settings()

        self.name = name or settings.worker_name
        self.queue_key = queue_key or settings.worker_queue_key
        self.prefetch = prefetch or settings.worker_prefetch
        self.queues = queues if queues is not None else settings.queues
        self.secret = settings.message_signing_secret
        self._metrics = metrics or get_metrics()

        self.connection = connection or BrokerConnection()

        self._redis_connection: RedisConnection | None = None
        if retry_store is None:
            self._redis_connection = RedisConnection()
            retry_store = RetryStore(self._redis_connection.connect(), metrics=self._metrics)
        self.retry_store = retry_store

        self.publishers = publishers or PublisherRegistry(
            self.connection, queues=self.queues, metrics=self._metrics
        )
        self.handlers = handlers if handlers is not None else HandlerRegistry()
        self.poller = RetryPoller(
            self.queue_key,
            self.retry_store,
            self.publishers,
            interval_seconds=poll_interval,
            metrics=self._metrics,
        )

        self._consumer: SecureConsumer | None = None
        self._poller_task: asyncio.Task | None = None

    def register_handler(self, action: str, handler: TaskHandler) -> None:
        """
        Bind a handler to an action, replacing any previous binding.

        Args:
            action: Action name carried in ``context.action``.
            handler: Async handler.
        """
        self.handlers.register(action, handler)

    async def _handle_task(self, task: TaskEnvelope) -> None:
        """
        Route a verified task to its handler.

        On failure the task is written to the retry store and the error is
        re-raised so the consumer dead-letters the delivery.

        Args:
            task: The verified task.
        """
        action = task.action
        bind_context(task_id=task.task_id, action=action, worker=self.name)

        start_time = time.monotonic()
        status = "succeeded"

        try:
            handler = self.handlers.get(action)

            logger.info(
                f"Routing task to {action} handler",
                extra={"task_id": task.task_id, "retry_count": task.retry_count},
            )

            with task_span(
                SPAN_HANDLE_TASK,
                task.task_id,
                queue=self.queue_key,
                action=action,
                retry_count=task.retry_count,
            ):
                await handler(task)

        except Exception as e:
            status = "failed"
            logger.error(
                f"Task failed: {e}",
                extra={"task_id": task.task_id, "action": action},
            )

            scheduled = await self.retry_store.schedule_retry(self.queue_key, task)
            if scheduled:
                logger.info(
                    "Task moved to retry store",
                    extra={"task_id": task.task_id, "retry_count": task.retry_count + 1},
                )
            raise

        finally:
            self._metrics.record_handler(
                queue=self.queue_key,
                action=action,
                status=status,
                duration_seconds=time.monotonic() - start_time,
            )

    async def start(self) -> None:
        """
        Start consuming and polling for retries.

        Raises:
            Exception: Any startup failure is logged and re-raised; it is fatal.
        """
        logger.info(
            "Worker starting",
            extra={"worker": self.name, "queue_key": self.queue_key, "prefetch": self.prefetch},
        )

        try:
            await self.retry_store.ping()

            self._consumer = await start_consumer(
                self.connection,
                self.queue_key,
                self._handle_task,
                prefetch=self.prefetch,
                queues=self.queues,
                secret=self.secret,
                metrics=self._metrics,
            )

            self._poller_task = asyncio.create_task(self.poller.start())
        except Exception as e:
            logger.error(f"Worker startup failed: {e}", extra={"worker": self.name})
            raise

        logger.info(f"{self.name} service online", extra={"handlers": self.handlers.actions()})

    async def wait(self) -> None:
        """Block until the retry poller stops."""
        if self._poller_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._poller_task

    async def stop(self) -> None:
        """Stop polling and consuming, then close connections."""
        logger.info("Worker stopping", extra={"worker": self.name})

        await self.poller.stop()
        if self._poller_task is not None:
            self._poller_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poller_task
            self._poller_task = None

        if self._consumer is not None:
            await self._consumer.cancel()
            self._consumer = None

        await self.connection.close()

        if self._redis_connection is not None:
            await self._redis_connection.disconnect()

        logger.info("Worker stopped", extra={"worker": self.name})

    def install_process_handlers(
        self,
        loop: asyncio.AbstractEventLoop,
        exit_func: Callable[[int], Any] = os._exit,
    ) -> None:
        """
        Treat any unhandled fault or termination signal as fatal.

        Uncaught exceptions, unhandled errors in event-loop tasks and
        SIGTERM/SIGINT log the reason and exit with status 1. There is no
        graceful drain.

        Args:
            loop: The running event loop.
            exit_func: Process exit function.
        """

        def shutdown(reason: str) -> None:
            logger.error("Shutting down worker", extra={"worker": self.name, "reason": reason})
            logging.shutdown()
            exit_func(1)

        def on_uncaught(
            exc_type: type[BaseException],
            exc: BaseException,
            tb: TracebackType | None,
        ) -> None:
            shutdown(f"uncaught exception: {exc!r}")

        def on_loop_error(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
            shutdown(f"unhandled error: {context.get('exception') or context.get('message')}")

        sys.excepthook = on_uncaught
        loop.set_exception_handler(on_loop_error)

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown, f"received {sig.name}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()

    setup_logging()
    setup_metrics(settings.prometheus_port)
    if settings.otel_enabled:
        setup_tracing()

    worker = Worker()
    register_builtin_handlers(worker.handlers)
    worker.install_process_handlers(asyncio.get_running_loop())

    try:
        await worker.start()
    except Exception:
        sys.exit(1)

    await worker.wait()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
