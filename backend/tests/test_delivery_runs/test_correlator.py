"""
Tests for finding the active delivery run carrying an order.
"""

import uuid
from datetime import timedelta
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from pharmadelivery.services.delivery_runs.correlator import (
    DeliveryRunCorrelator,
    resolve_position,
    select_run,
)
from pharmadelivery.services.delivery_runs.enums import DeliveryRunStatus
from pharmadelivery.services.delivery_runs.repository import DeliveryRunRepository

T0 = "2024-05-01T12:00:00+00:00"
T1 = "2024-05-01T12:00:30+00:00"


class TestSelectRun:
    """Tests for choosing among candidate runs."""

    def test_no_candidates(self) -> None:
        assert select_run([], uuid.uuid4()) is None

    def test_completed_runs_ignored(self, run_factory: Callable[..., Any]) -> None:
        order_id = uuid.uuid4()
        run = run_factory(order_ids=[order_id], status=DeliveryRunStatus.COMPLETED)

        assert select_run([run], order_id) is None

    def test_runs_not_carrying_order_ignored(self, run_factory: Callable[..., Any]) -> None:
        run = run_factory(order_ids=[uuid.uuid4()])

        assert select_run([run], uuid.uuid4()) is None

    def test_ambiguity_resolved_to_most_recent(self, run_factory: Callable[..., Any]) -> None:
        order_id = uuid.uuid4()
        older = run_factory(order_ids=[order_id])
        newer = run_factory(
            order_ids=[order_id],
            updated_at=older.updated_at + timedelta(minutes=5),
        )

        assert select_run([older, newer], order_id) is newer
        assert select_run([newer, older], order_id) is newer


class TestResolvePosition:
    """Tests for the live position of an order."""

    def test_last_checkpoint_is_position(self, run_factory: Callable[..., Any]) -> None:
        order_id = uuid.uuid4()
        run = run_factory(
            order_ids=[order_id],
            checkpoints=[
                {"latitude": 1.0, "longitude": 1.0, "timestamp": T0},
                {"latitude": 2.0, "longitude": 2.0, "timestamp": T1},
            ],
        )

        position = resolve_position([run], order_id)

        assert position.checkpoint == {"latitude": 2.0, "longitude": 2.0, "timestamp": T1}
        assert position.position_known is True
        assert position.run_id == str(run.id)
        assert 157_000 < position.distance_so_far < 157_500

    def test_run_without_checkpoints(self, run_factory: Callable[..., Any]) -> None:
        order_id = uuid.uuid4()
        run = run_factory(order_ids=[order_id])

        document = resolve_position([run], order_id).to_dict()

        assert document["position"] is None
        assert document["positionKnown"] is False
        assert document["distanceSoFar"] == 0.0
        assert document["deliverymanId"] == str(run.deliveryman_id)

    def test_no_run(self) -> None:
        assert resolve_position([], uuid.uuid4()) is None


class TestDeliveryRunCorrelator:
    """Tests for the repository-backed lookup."""

    @pytest.fixture
    def correlator(self, mock_session: AsyncMock) -> DeliveryRunCorrelator:
        correlator = DeliveryRunCorrelator(mock_session)
        correlator.repository = AsyncMock(spec=DeliveryRunRepository)
        return correlator

    async def test_locate(
        self,
        correlator: DeliveryRunCorrelator,
        run_factory: Callable[..., Any],
    ) -> None:
        order_id = uuid.uuid4()
        run = run_factory(
            order_ids=[order_id],
            checkpoints=[{"latitude": -23.55, "longitude": -46.63, "timestamp": T0}],
        )
        correlator.repository.get_active_runs_for_order.return_value = [run]

        position = await correlator.locate(order_id)

        assert position.checkpoint["latitude"] == -23.55
        correlator.repository.get_active_runs_for_order.assert_awaited_once_with(order_id)

    async def test_find_run_none(self, correlator: DeliveryRunCorrelator) -> None:
        correlator.repository.get_active_runs_for_order.return_value = []

        assert await correlator.find_run(uuid.uuid4()) is None
