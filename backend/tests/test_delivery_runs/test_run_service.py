"""
Test suite for DeliveryRunService.

Covers opening runs, appending checkpoints to active runs only, and
completing runs with distance finalization and courier duty reset.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from pharmadelivery.services.analytics.sync_queue import AnalyticsSyncQueue
from pharmadelivery.services.delivery_runs.enums import DeliveryRunStatus, DutyStatus
from pharmadelivery.services.delivery_runs.repository import (
    DeliveryRunActiveError,
    DeliveryRunClosedError,
    DeliveryRunError,
    DeliveryRunNotFoundError,
    DeliveryRunRepository,
    DeliverymanNotFoundError,
    DeliverymanRepository,
)
from pharmadelivery.services.delivery_runs.service import DeliveryRunService
from pharmadelivery.services.realtime.publisher import ChangePublisher


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def run_service(mock_session: AsyncMock) -> DeliveryRunService:
    """
    Create DeliveryRunService with mocked collaborators.

    Returns:
        DeliveryRunService: Service instance for testing
    """
    service = DeliveryRunService(mock_session)
    service.repository = AsyncMock(spec=DeliveryRunRepository)
    service.deliverymen = AsyncMock(spec=DeliverymanRepository)
    service.publisher = AsyncMock(spec=ChangePublisher)
    service.analytics_queue = AsyncMock(spec=AnalyticsSyncQueue)
    return service


def stored(run_service: DeliveryRunService, run: Any) -> Callable[..., Any]:
    """
    Back the mocked run repository with one in-memory run.

    Returns:
        The close side effect, so tests can wrap it
    """
    run_service.repository.get_run_by_id.return_value = run

    async def close(run_id, now) -> bool:
        run.status = DeliveryRunStatus.COMPLETED
        run.end_time = now
        return True

    async def record_distance(run_id, total_distance) -> None:
        run.total_distance = total_distance

    run_service.repository.close_run.side_effect = close
    run_service.repository.record_distance.side_effect = record_distance
    return close


# ============================================================================
# Start
# ============================================================================


class TestStartRun:
    """Tests for opening runs."""

    async def test_start_run(
        self,
        run_service: DeliveryRunService,
        courier_factory: Callable[..., Any],
        run_factory: Callable[..., Any],
        mock_session: AsyncMock,
    ) -> None:
        courier = courier_factory()
        first, second = uuid.uuid4(), uuid.uuid4()
        run_service.deliverymen.get_by_id.return_value = courier
        run_service.repository.get_active_run_for_deliveryman.return_value = None
        run_service.repository.create_run.side_effect = lambda **fields: run_factory(**fields)

        document = await run_service.start_run(courier.id, [first, second, first])

        assert document["status"] == "active"
        assert document["orderIds"] == [str(first), str(second)]
        assert document["checkpoints"] == []
        assert document["pharmacyUnitId"] == "unit-centro"
        mock_session.commit.assert_awaited_once()
        run_service.publisher.run_changed.assert_awaited_once()
        assert run_service.publisher.run_changed.await_args.kwargs["notify_orders"] is True

    async def test_unknown_courier(self, run_service: DeliveryRunService) -> None:
        run_service.deliverymen.get_by_id.return_value = None

        with pytest.raises(DeliverymanNotFoundError):
            await run_service.start_run(uuid.uuid4(), [uuid.uuid4()])

    async def test_empty_order_list(
        self,
        run_service: DeliveryRunService,
        courier_factory: Callable[..., Any],
    ) -> None:
        run_service.deliverymen.get_by_id.return_value = courier_factory()

        with pytest.raises(DeliveryRunError):
            await run_service.start_run(uuid.uuid4(), [])

        run_service.repository.create_run.assert_not_awaited()

    async def test_one_active_run_per_courier(
        self,
        run_service: DeliveryRunService,
        courier_factory: Callable[..., Any],
        run_factory: Callable[..., Any],
    ) -> None:
        courier = courier_factory()
        run_service.deliverymen.get_by_id.return_value = courier
        run_service.repository.get_active_run_for_deliveryman.return_value = run_factory(
            deliveryman_id=courier.id
        )

        with pytest.raises(DeliveryRunActiveError):
            await run_service.start_run(courier.id, [uuid.uuid4()])


# ============================================================================
# Checkpoints
# ============================================================================


class TestAppendCheckpoint:
    """Tests for streaming GPS samples."""

    async def test_append_to_active_run(
        self,
        run_service: DeliveryRunService,
        run_factory: Callable[..., Any],
        mock_session: AsyncMock,
    ) -> None:
        order_id = uuid.uuid4()
        run = run_factory(order_ids=[order_id])
        run_service.repository.get_run_by_id.return_value = run

        async def append(run_id, checkpoint, now) -> bool:
            run.checkpoints = [*run.checkpoints, checkpoint]
            return True

        run_service.repository.append_checkpoint.side_effect = append
        taken_at = datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc)

        document = await run_service.append_checkpoint(run.id, -23.55, -46.63, taken_at)

        assert document["checkpoints"] == [
            {
                "latitude": -23.55,
                "longitude": -46.63,
                "timestamp": "2024-05-01T12:05:00+00:00",
            }
        ]
        mock_session.commit.assert_awaited_once()
        run_service.publisher.run_changed.assert_awaited_once_with(run.id, [str(order_id)])

    @pytest.mark.parametrize("latitude,longitude", [(91, 0), (-90.5, 0), (0, 180.1)])
    async def test_invalid_coordinates(
        self,
        run_service: DeliveryRunService,
        latitude: float,
        longitude: float,
    ) -> None:
        with pytest.raises(DeliveryRunError):
            await run_service.append_checkpoint(uuid.uuid4(), latitude, longitude)

        run_service.repository.append_checkpoint.assert_not_awaited()

    async def test_completed_run_rejects_checkpoints(
        self,
        run_service: DeliveryRunService,
        run_factory: Callable[..., Any],
        mock_session: AsyncMock,
    ) -> None:
        run = run_factory(status=DeliveryRunStatus.COMPLETED)
        run_service.repository.append_checkpoint.return_value = False
        run_service.repository.get_run_by_id.return_value = run

        with pytest.raises(DeliveryRunClosedError):
            await run_service.append_checkpoint(run.id, 0, 0)

        mock_session.commit.assert_not_awaited()

    async def test_missing_run(self, run_service: DeliveryRunService) -> None:
        run_service.repository.append_checkpoint.return_value = False
        run_service.repository.get_run_by_id.return_value = None

        with pytest.raises(DeliveryRunNotFoundError):
            await run_service.append_checkpoint(uuid.uuid4(), 0, 0)


# ============================================================================
# Completion
# ============================================================================


class TestCompleteRun:
    """Tests for closing runs."""

    async def test_complete_run(
        self,
        run_service: DeliveryRunService,
        run_factory: Callable[..., Any],
        mock_session: AsyncMock,
    ) -> None:
        run = run_factory(
            order_ids=[uuid.uuid4()],
            checkpoints=[
                {"latitude": 0.0, "longitude": 0.0},
                {"latitude": 0.0, "longitude": 1.0},
            ],
        )
        stored(run_service, run)

        document = await run_service.complete_run(run.id)

        assert document["status"] == "completed"
        assert document["totalDistance"] == pytest.approx(111194.9, rel=1e-4)
        assert document["endTime"] is not None
        run_service.deliverymen.update_duty.assert_awaited_once_with(
            run.deliveryman_id, DutyStatus.AWAITING_ORDER, None
        )
        mock_session.commit.assert_awaited_once()
        run_service.analytics_queue.enqueue_run.assert_awaited_once_with(run.id)

    async def test_distance_includes_checkpoint_appended_before_close(
        self,
        run_service: DeliveryRunService,
        run_factory: Callable[..., Any],
    ) -> None:
        run = run_factory(
            checkpoints=[
                {"latitude": 0.0, "longitude": 0.0},
                {"latitude": 0.0, "longitude": 1.0},
            ],
        )
        close = stored(run_service, run)

        async def close_after_late_checkpoint(run_id, now) -> bool:
            run.checkpoints = run.checkpoints + [{"latitude": 0.0, "longitude": 2.0}]
            return await close(run_id, now)

        run_service.repository.close_run.side_effect = close_after_late_checkpoint

        document = await run_service.complete_run(run.id)

        assert len(document["checkpoints"]) == 3
        assert document["totalDistance"] == pytest.approx(2 * 111194.9, rel=1e-4)

    async def test_completing_twice_is_a_no_op(
        self,
        run_service: DeliveryRunService,
        run_factory: Callable[..., Any],
        mock_session: AsyncMock,
    ) -> None:
        run = run_factory(status=DeliveryRunStatus.COMPLETED, total_distance=42.0)
        run_service.repository.get_run_by_id.return_value = run

        document = await run_service.complete_run(run.id)

        assert document["totalDistance"] == 42.0
        run_service.repository.close_run.assert_not_awaited()
        run_service.deliverymen.update_duty.assert_not_awaited()
        mock_session.commit.assert_not_awaited()

    async def test_complete_missing_run(self, run_service: DeliveryRunService) -> None:
        run_service.repository.get_run_by_id.return_value = None

        with pytest.raises(DeliveryRunNotFoundError):
            await run_service.complete_run(uuid.uuid4())

    async def test_active_run_for_courier(
        self,
        run_service: DeliveryRunService,
        run_factory: Callable[..., Any],
    ) -> None:
        run_service.repository.get_active_run_for_deliveryman.return_value = None
        assert await run_service.get_active_run_for_deliveryman(uuid.uuid4()) is None

        run = run_factory()
        run_service.repository.get_active_run_for_deliveryman.return_value = run
        document = await run_service.get_active_run_for_deliveryman(run.deliveryman_id)

        assert document["id"] == str(run.id)
