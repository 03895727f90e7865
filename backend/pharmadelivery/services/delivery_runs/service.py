"""
Delivery run service for courier movement logs.

A courier opens a run when leaving the unit with one or more orders, streams
GPS checkpoints while driving and completes the run on return. Completion
finalizes the travelled distance, queues the run for warehouse sync and puts
the courier back to awaiting orders.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.cache.redis_client import RedisClient
from pharmadelivery.core.logging import get_logger
from pharmadelivery.core.timeutils import isoformat, utc_now
from pharmadelivery.database.models.delivery_run import DeliveryRun
from pharmadelivery.services.analytics.sync_queue import AnalyticsSyncQueue
from pharmadelivery.services.delivery_runs.enums import DeliveryRunStatus, DutyStatus
from pharmadelivery.services.delivery_runs.geo import path_distance
from pharmadelivery.services.delivery_runs.repository import (
    DeliveryRunActiveError,
    DeliveryRunClosedError,
    DeliveryRunError,
    DeliveryRunNotFoundError,
    DeliveryRunRepository,
    DeliverymanNotFoundError,
    DeliverymanRepository,
)
from pharmadelivery.services.realtime.publisher import ChangePublisher

logger = get_logger(__name__)


def _validate_coordinates(latitude: float, longitude: float) -> None:
    if not -90.0 <= latitude <= 90.0:
        raise DeliveryRunError("Latitude must be between -90 and 90", latitude=latitude)
    if not -180.0 <= longitude <= 180.0:
        raise DeliveryRunError("Longitude must be between -180 and 180", longitude=longitude)


class DeliveryRunService:
    """Lifecycle of courier delivery runs."""

    def __init__(self, session: AsyncSession, redis_client: Optional[RedisClient] = None):
        """
        Initialize delivery run service.

        Args:
            session: Async database session
            redis_client: Redis client for notifications and the sync queue
        """
        self.session = session
        self.repository = DeliveryRunRepository(session)
        self.deliverymen = DeliverymanRepository(session)
        self.publisher = ChangePublisher(redis_client)
        self.analytics_queue = AnalyticsSyncQueue(redis_client)

    async def _get_run(self, run_id: uuid.UUID) -> DeliveryRun:
        run = await self.repository.get_run_by_id(run_id, fresh=True)
        if run is None:
            raise DeliveryRunNotFoundError("Delivery run not found", run_id=str(run_id))
        return run

    async def get_run(self, run_id: uuid.UUID) -> dict[str, Any]:
        """
        Get a run document.

        Raises:
            DeliveryRunNotFoundError: If run not found
        """
        return (await self._get_run(run_id)).to_document()

    async def start_run(
        self,
        deliveryman_id: uuid.UUID,
        order_ids: Sequence[uuid.UUID],
        pharmacy_unit_id: Optional[str] = None,
        motorcycle_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Open a run for a courier.

        Args:
            deliveryman_id: Courier starting the circuit
            order_ids: Orders being carried
            pharmacy_unit_id: Departure unit, defaults to the courier's unit
            motorcycle_id: Vehicle in use

        Returns:
            Created run document

        Raises:
            DeliverymanNotFoundError: If courier not found
            DeliveryRunActiveError: If the courier already has an open run
            DeliveryRunError: If no order is given
        """
        courier = await self.deliverymen.get_by_id(deliveryman_id)
        if courier is None:
            raise DeliverymanNotFoundError(
                "Courier not found",
                deliveryman_id=str(deliveryman_id),
            )

        unique_order_ids = [str(order_id) for order_id in dict.fromkeys(order_ids)]
        if not unique_order_ids:
            raise DeliveryRunError("A run must carry at least one order")

        existing = await self.repository.get_active_run_for_deliveryman(deliveryman_id)
        if existing is not None:
            raise DeliveryRunActiveError(
                "Courier already has an active delivery run",
                deliveryman_id=str(deliveryman_id),
                run_id=str(existing.id),
            )

        now = utc_now()
        run = await self.repository.create_run(
            deliveryman_id=deliveryman_id,
            pharmacy_unit_id=pharmacy_unit_id or courier.pharmacy_unit_id,
            motorcycle_id=motorcycle_id,
            status=DeliveryRunStatus.ACTIVE,
            order_ids=unique_order_ids,
            checkpoints=[],
            total_distance=0.0,
            start_time=now,
            created_at=now,
            updated_at=now,
        )
        await self.session.commit()

        logger.info(
            "Delivery run started",
            run_id=str(run.id),
            deliveryman_id=str(deliveryman_id),
            order_count=len(unique_order_ids),
        )
        await self.publisher.run_changed(run.id, unique_order_ids, notify_orders=True)
        return run.to_document()

    async def append_checkpoint(
        self,
        run_id: uuid.UUID,
        latitude: float,
        longitude: float,
        timestamp: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Append one GPS sample to an active run.

        Raises:
            DeliveryRunNotFoundError: If run not found
            DeliveryRunClosedError: If the run is completed
            DeliveryRunError: If coordinates are out of range
        """
        _validate_coordinates(latitude, longitude)
        now = utc_now()
        checkpoint = {
            "latitude": float(latitude),
            "longitude": float(longitude),
            "timestamp": isoformat(timestamp or now),
        }

        appended = await self.repository.append_checkpoint(run_id, checkpoint, now)
        if not appended:
            run = await self._get_run(run_id)
            raise DeliveryRunClosedError(
                "Delivery run is not active",
                run_id=str(run_id),
                status=run.status.value,
            )
        await self.session.commit()

        run = await self._get_run(run_id)
        logger.debug(
            "Checkpoint appended",
            run_id=str(run_id),
            checkpoint_count=len(run.checkpoints or []),
        )
        await self.publisher.run_changed(run.id, run.order_ids)
        return run.to_document()

    async def complete_run(self, run_id: uuid.UUID) -> dict[str, Any]:
        """
        Close a run and free its courier.

        Completing an already completed run returns it unchanged.

        Raises:
            DeliveryRunNotFoundError: If run not found
        """
        run = await self._get_run(run_id)
        if not run.status.is_open():
            logger.info("Delivery run already completed", run_id=str(run_id))
            return run.to_document()

        closed = await self.repository.close_run(run_id, utc_now())
        if not closed:
            return (await self._get_run(run_id)).to_document()

        # Measure the path as it stood when the run was closed
        run = await self._get_run(run_id)
        await self.repository.record_distance(run_id, path_distance(run.checkpoints or []))

        await self.deliverymen.update_duty(run.deliveryman_id, DutyStatus.AWAITING_ORDER, None)
        await self.session.commit()

        run = await self._get_run(run_id)
        logger.info(
            "Delivery run completed",
            run_id=str(run.id),
            deliveryman_id=str(run.deliveryman_id),
            total_distance=round(run.total_distance, 1),
            checkpoint_count=len(run.checkpoints or []),
        )
        await self.analytics_queue.enqueue_run(run.id)
        await self.publisher.run_changed(run.id, run.order_ids, notify_orders=True)
        return run.to_document()

    async def get_active_run_for_deliveryman(
        self,
        deliveryman_id: uuid.UUID,
    ) -> Optional[dict[str, Any]]:
        """The courier's open run, for resuming a session."""
        run = await self.repository.get_active_run_for_deliveryman(deliveryman_id)
        return run.to_document() if run else None
