"""
Unit tests for worker routing, retry hand-off and process handlers.
"""

import signal
import sys
from unittest.mock import MagicMock

import pytest

from taskbroker.exceptions import HandlerNotFoundError, QueueConfigError
from taskbroker.types.task import RetryRecord, TaskEnvelope
from taskbroker.worker.handlers import HandlerRegistry
from taskbroker.worker.main import Worker
from tests.fakes import FakeClock, FakeRedis


def stored_records(redis_client: FakeRedis) -> list[RetryRecord]:
    return [RetryRecord.parse(member) for member in redis_client.sorted_sets.get("retry:Q", {})]


class TestHandleTask:
    """Tests for Worker._handle_task."""

    @pytest.mark.asyncio
    async def test_routes_by_action(self, worker: Worker, handlers: HandlerRegistry):
        """Test the handler registered for context.action is called."""
        seen = []

        async def handle_send(task: TaskEnvelope) -> None:
            seen.append(("send", task.task_id))

        handlers.register("send", handle_send)
        task = TaskEnvelope.new({"x": 1}, {"action": "send"})

        await worker._handle_task(task)

        assert seen == [("send", task.task_id)]

    @pytest.mark.asyncio
    async def test_missing_action_uses_default(self, worker: Worker, handlers: HandlerRegistry):
        """Test a task without an action goes to the default handler."""
        seen = []

        async def handle_default(task: TaskEnvelope) -> None:
            seen.append(task.payload)

        handlers.register("default", handle_default)

        await worker._handle_task(TaskEnvelope.new("hello"))

        assert seen == ["hello"]

    @pytest.mark.asyncio
    async def test_success_schedules_nothing(
        self,
        worker: Worker,
        handlers: HandlerRegistry,
        redis_client: FakeRedis,
    ):
        """Test a successful task leaves the retry store empty."""

        async def handle_default(task: TaskEnvelope) -> None:
            return None

        handlers.register("default", handle_default)

        await worker._handle_task(TaskEnvelope.new({"x": 1}))

        assert stored_records(redis_client) == []

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(
        self,
        worker: Worker,
        handlers: HandlerRegistry,
        redis_client: FakeRedis,
        clock: FakeClock,
    ):
        """Test a failing handler stores a retry and re-raises."""

        async def handle_default(task: TaskEnvelope) -> None:
            raise ValueError("handler blew up")

        handlers.register("default", handle_default)
        task = TaskEnvelope.new({"x": 1})

        with pytest.raises(ValueError, match="handler blew up"):
            await worker._handle_task(task)

        [record] = stored_records(redis_client)
        assert record.task_id == task.task_id
        assert record.retry_count == 1
        assert record.next_retry_at == clock.now + 10_000

    @pytest.mark.asyncio
    async def test_unknown_action_is_a_failure(
        self,
        worker: Worker,
        redis_client: FakeRedis,
    ):
        """Test an unregistered action fails the task and is retried."""
        with pytest.raises(HandlerNotFoundError):
            await worker._handle_task(TaskEnvelope.new({"x": 1}, {"action": "nope"}))

        assert len(stored_records(redis_client)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_failure_not_stored(
        self,
        worker: Worker,
        handlers: HandlerRegistry,
        redis_client: FakeRedis,
    ):
        """Test a task past the retry limit still fails but is not stored."""

        async def handle_default(task: TaskEnvelope) -> None:
            raise RuntimeError("still broken")

        handlers.register("default", handle_default)

        with pytest.raises(RuntimeError):
            await worker._handle_task(TaskEnvelope.new({"x": 1}, retry_count=5))

        assert stored_records(redis_client) == []

    @pytest.mark.asyncio
    async def test_register_handler_overwrites(self, worker: Worker):
        """Test register_handler replaces an existing binding."""

        async def first(task: TaskEnvelope) -> None:
            return None

        async def second(task: TaskEnvelope) -> None:
            return None

        worker.register_handler("send", first)
        worker.register_handler("send", second)

        assert worker.handlers.get("send") is second


class TestWorkerLifecycle:
    """Tests for Worker.start and Worker.stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, worker: Worker, redis_client: FakeRedis, broker):
        """Test start pings the store, consumes the queue and runs the poller."""
        await worker.start()

        assert redis_client.pings == 1
        assert len(broker.queues["q.tasks"].consumers) == 1
        assert worker._poller_task is not None

        await worker.stop()

        assert broker.queues["q.tasks"].consumers == {}
        assert worker._poller_task is None
        assert worker.connection.connection is None

    @pytest.mark.asyncio
    async def test_start_failure_raises(self, worker: Worker):
        """Test a startup failure propagates."""
        worker.queue_key = "MISSING"

        with pytest.raises(QueueConfigError):
            await worker.start()


class TestProcessHandlers:
    """Tests for Worker.install_process_handlers."""

    @pytest.fixture
    def installed(self, worker: Worker, monkeypatch: pytest.MonkeyPatch):
        """Install handlers on a mock loop with a recording exit function."""
        monkeypatch.setattr(sys, "excepthook", sys.excepthook)
        monkeypatch.setattr("taskbroker.worker.main.logging.shutdown", MagicMock())

        loop = MagicMock()
        exit_func = MagicMock()
        worker.install_process_handlers(loop, exit_func=exit_func)
        return loop, exit_func

    @pytest.mark.asyncio
    async def test_uncaught_exception_exits(self, installed):
        """Test an uncaught exception exits with status 1."""
        _, exit_func = installed

        sys.excepthook(ValueError, ValueError("boom"), None)

        exit_func.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_unhandled_loop_error_exits(self, installed):
        """Test an unhandled event-loop error exits with status 1."""
        loop, exit_func = installed
        [(handler,), _] = loop.set_exception_handler.call_args

        handler(loop, {"message": "Task exception was never retrieved"})

        exit_func.assert_called_once_with(1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sig", [signal.SIGTERM, signal.SIGINT])
    async def test_signals_exit(self, installed, sig):
        """Test SIGTERM and SIGINT exit with status 1."""
        loop, exit_func = installed
        registered = {
            call.args[0]: call.args[1:] for call in loop.add_signal_handler.call_args_list
        }

        callback, *args = registered[sig]
        callback(*args)

        exit_func.assert_called_once_with(1)
