"""
Unit tests for the retry poller.
"""

import json
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from taskbroker.broker.publisher import PublisherRegistry
from taskbroker.observability.metrics import MetricsCollector
from taskbroker.retry.store import RetryStore
from taskbroker.types.task import TaskEnvelope, dumps_canonical
from taskbroker.worker.poller import RetryPoller
from tests.fakes import FakeBroker, FakeClock, FakeRedis


def published_bodies(broker: FakeBroker) -> list[dict]:
    return [json.loads(message.body) for _, message in broker.exchanges["q.exchange"].published]


class TestRetryPoller:
    """Tests for RetryPoller."""

    @pytest.fixture
    def poller(
        self,
        retry_store: RetryStore,
        publishers: PublisherRegistry,
        metrics: MetricsCollector,
    ) -> RetryPoller:
        """Poller over queue Q that preserves retry counts."""
        return RetryPoller(
            "Q",
            retry_store,
            publishers,
            interval_seconds=0.01,
            batch_size=10,
            reset_retry_count=False,
            metrics=metrics,
        )

    @pytest.mark.asyncio
    async def test_nothing_due(
        self,
        poller: RetryPoller,
        retry_store: RetryStore,
        broker: FakeBroker,
    ):
        """Test records that are not yet due stay in the store."""
        await retry_store.schedule_retry("Q", TaskEnvelope.new({"x": 1}))

        assert await poller.run_once() == 0

        assert await retry_store.pending_count("Q") == 1
        assert broker.connections == []

    @pytest.mark.asyncio
    async def test_republishes_due_retry(
        self,
        poller: RetryPoller,
        retry_store: RetryStore,
        clock: FakeClock,
        broker: FakeBroker,
        registry: CollectorRegistry,
    ):
        """Test a due record is republished as a new task and removed."""
        task = TaskEnvelope.new({"x": 1}, {"action": "send"})
        await retry_store.schedule_retry("Q", task)
        clock.advance(10_000)

        assert await poller.run_once() == 1

        [body] = published_bodies(broker)
        assert body["taskId"] != task.task_id
        assert body["payload"] == {"x": 1}
        assert body["context"] == {"action": "send"}
        assert body["retryCount"] == 1
        assert len(broker.queues["q.tasks"].messages) == 1
        assert await retry_store.pending_count("Q") == 0
        assert registry.get_sample_value("task_retries_republished_total", {"queue": "Q"}) == 1
        assert registry.get_sample_value("task_retries_pending", {"queue": "Q"}) == 0

    @pytest.mark.asyncio
    async def test_reset_retry_count(
        self,
        retry_store: RetryStore,
        publishers: PublisherRegistry,
        clock: FakeClock,
        broker: FakeBroker,
        metrics: MetricsCollector,
    ):
        """Test the reset policy republishes with a zero retry count."""
        poller = RetryPoller(
            "Q", retry_store, publishers, reset_retry_count=True, metrics=metrics
        )
        await retry_store.schedule_retry("Q", TaskEnvelope.new({"x": 1}, retry_count=2))
        clock.advance(40_000)

        await poller.run_once()

        assert published_bodies(broker)[0]["retryCount"] == 0

    @pytest.mark.asyncio
    async def test_batch_size(
        self,
        retry_store: RetryStore,
        publishers: PublisherRegistry,
        clock: FakeClock,
        metrics: MetricsCollector,
    ):
        """Test one tick handles at most batch_size records."""
        poller = RetryPoller("Q", retry_store, publishers, batch_size=2, metrics=metrics)
        for n in range(5):
            await retry_store.schedule_retry("Q", TaskEnvelope.new({"n": n}))
        clock.advance(10_000)

        assert await poller.run_once() == 2
        assert await retry_store.pending_count("Q") == 3

    @pytest.mark.asyncio
    async def test_malformed_record_dropped(
        self,
        poller: RetryPoller,
        redis_client: FakeRedis,
        clock: FakeClock,
        broker: FakeBroker,
    ):
        """Test an unreadable member is removed without publishing."""
        await redis_client.zadd("retry:Q", {"not json": clock.now})

        assert await poller.run_once() == 0

        assert await redis_client.zcard("retry:Q") == 0
        assert broker.connections == []

    @pytest.mark.asyncio
    async def test_unpublishable_record_does_not_block_batch(
        self,
        poller: RetryPoller,
        retry_store: RetryStore,
        redis_client: FakeRedis,
        clock: FakeClock,
        broker: FakeBroker,
    ):
        """Test a record with a null payload is dropped and later records still run."""
        null_payload = dumps_canonical(
            {
                "taskId": "null-payload",
                "payload": None,
                "context": {},
                "_retryCount": 1,
                "_nextRetryAt": clock.now - 1,
            }
        )
        await redis_client.zadd("retry:Q", {null_payload: clock.now - 1})
        await retry_store.schedule_retry("Q", TaskEnvelope.new({"x": 1}))
        clock.advance(10_000)

        assert await poller.run_once() == 1

        assert await redis_client.zcard("retry:Q") == 0
        assert [body["payload"] for body in published_bodies(broker)] == [{"x": 1}]

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_record(
        self,
        poller: RetryPoller,
        retry_store: RetryStore,
        clock: FakeClock,
    ):
        """Test a record stays in the store when republishing fails."""
        await retry_store.schedule_retry("Q", TaskEnvelope.new({"x": 1}))
        clock.advance(10_000)
        poller.publishers.publish_task = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            await poller.run_once()

        assert await retry_store.pending_count("Q") == 1

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, poller: RetryPoller):
        """Test a failing tick is logged and the loop keeps running."""
        calls = 0

        async def flaky() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("redis down")
            await poller.stop()
            return 0

        poller.run_once = flaky

        await poller.start()

        assert calls == 2
