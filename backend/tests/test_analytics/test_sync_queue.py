"""
Tests for the analytics sync queue and change publisher against a mocked Redis client.
"""

import json
import uuid
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from pharmadelivery.cache.redis_client import ChannelKeyManager, RedisClient
from pharmadelivery.services.analytics.sync_queue import AnalyticsSyncQueue
from pharmadelivery.services.orders.metrics import ConflictCounter
from pharmadelivery.services.realtime.publisher import ChangePublisher

KEYS = ChannelKeyManager()


@pytest.fixture
def redis_mock() -> AsyncMock:
    """Mock Redis client."""
    return AsyncMock(spec=RedisClient)


class TestAnalyticsSyncQueue:
    """Tests for queueing finished entities."""

    async def test_enqueue_order(self, redis_mock: AsyncMock) -> None:
        order_id = uuid.uuid4()
        redis_mock.enqueue_unique.return_value = True

        queued = await AnalyticsSyncQueue(redis_mock, KEYS).enqueue_order(order_id)

        assert queued is True
        redis_mock.enqueue_unique.assert_awaited_once_with(
            "pharmadelivery:analytics:orders",
            "pharmadelivery:analytics:orders:members",
            str(order_id),
        )

    async def test_enqueue_run_already_queued(self, redis_mock: AsyncMock) -> None:
        redis_mock.enqueue_unique.return_value = False

        assert await AnalyticsSyncQueue(redis_mock, KEYS).enqueue_run(uuid.uuid4()) is False

    async def test_redis_failure_does_not_raise(self, redis_mock: AsyncMock) -> None:
        redis_mock.enqueue_unique.side_effect = RedisError("READONLY")

        assert await AnalyticsSyncQueue(redis_mock, KEYS).enqueue_order(uuid.uuid4()) is False

    async def test_without_redis(self) -> None:
        queue = AnalyticsSyncQueue(None, KEYS)

        assert await queue.enqueue_order(uuid.uuid4()) is False
        assert await queue.drain("orders") == []
        assert await queue.pending("runs") == 0

    async def test_drain(self, redis_mock: AsyncMock) -> None:
        redis_mock.dequeue_many.return_value = ["a", "b"]

        drained = await AnalyticsSyncQueue(redis_mock, KEYS).drain("runs", batch=10)

        assert drained == ["a", "b"]
        redis_mock.dequeue_many.assert_awaited_once_with(
            "pharmadelivery:analytics:runs",
            "pharmadelivery:analytics:runs:members",
            10,
        )

    async def test_drain_unknown_entity(self, redis_mock: AsyncMock) -> None:
        with pytest.raises(ValueError):
            await AnalyticsSyncQueue(redis_mock, KEYS).drain("couriers")


class TestChangePublisher:
    """Tests for change notifications."""

    async def test_order_changed(self, redis_mock: AsyncMock) -> None:
        order_id = uuid.uuid4()

        await ChangePublisher(redis_mock, KEYS).order_changed(order_id, 3)

        redis_mock.publish.assert_awaited_once_with(
            f"pharmadelivery:order:{order_id}",
            {"entity": "order", "id": str(order_id), "version": 3},
        )

    async def test_run_changed_notifies_carried_orders(self, redis_mock: AsyncMock) -> None:
        run_id, order_id = uuid.uuid4(), uuid.uuid4()

        await ChangePublisher(redis_mock, KEYS).run_changed(
            run_id, [order_id], notify_orders=True
        )

        channels = [call.args[0] for call in redis_mock.publish.await_args_list]
        assert channels == [f"pharmadelivery:run:{run_id}", f"pharmadelivery:order:{order_id}"]

    async def test_publish_failure_logged_not_raised(self, redis_mock: AsyncMock) -> None:
        redis_mock.publish.side_effect = RedisError("connection lost")

        await ChangePublisher(redis_mock, KEYS).order_changed(uuid.uuid4(), 1)

    async def test_notification_is_json_serializable(self, redis_mock: AsyncMock) -> None:
        await ChangePublisher(redis_mock, KEYS).run_changed(uuid.uuid4(), [uuid.uuid4()])

        message = redis_mock.publish.await_args.args[1]
        assert json.loads(json.dumps(message))["entity"] == "run"


class TestConflictCounter:
    """Tests for the compare-and-swap conflict metric."""

    async def test_record(self, redis_mock: AsyncMock) -> None:
        redis_mock.incr.return_value = 4

        assert await ConflictCounter(redis_mock, KEYS).record() == 4
        redis_mock.incr.assert_awaited_once_with("pharmadelivery:metrics:transition_conflicts")

    async def test_record_failure(self, redis_mock: AsyncMock) -> None:
        redis_mock.incr.side_effect = RedisError("down")

        assert await ConflictCounter(redis_mock, KEYS).record() is None

    async def test_value(self, redis_mock: AsyncMock) -> None:
        redis_mock.get.return_value = "12"

        assert await ConflictCounter(redis_mock, KEYS).value() == 12
        assert await ConflictCounter(None, KEYS).value() == 0
