"""
Delivery run and courier data access.

Runs are written through conditional statements: checkpoints are appended
with an atomic JSONB concatenation and runs are closed only while active,
so concurrent writers never rewrite each other's data.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import and_, select, type_coerce, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.core.logging import get_logger
from pharmadelivery.database.models.delivery_run import DeliveryRun
from pharmadelivery.database.models.deliveryman import Deliveryman
from pharmadelivery.services.delivery_runs.enums import DeliveryRunStatus, DutyStatus

logger = get_logger(__name__)


class DeliveryRunError(Exception):
    """Base exception for delivery run errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DeliveryRunNotFoundError(DeliveryRunError):
    """Raised when a delivery run is not found."""

    pass


class DeliveryRunClosedError(DeliveryRunError):
    """Raised when writing to a run that is no longer active."""

    pass


class DeliveryRunActiveError(DeliveryRunError):
    """Raised when a courier already has an active run."""

    pass


class DeliverymanNotFoundError(DeliveryRunError):
    """Raised when a courier is not found."""

    pass


class DeliveryRunRepository:
    """Repository for delivery run data access operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_run(self, **fields: Any) -> DeliveryRun:
        """
        Insert a new run.

        Raises:
            DeliveryRunError: If creation fails
        """
        try:
            run = DeliveryRun(**fields)
            self.session.add(run)
            await self.session.flush()
            await self.session.refresh(run)
            return run

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Delivery run creation failed",
                deliveryman_id=str(fields.get("deliveryman_id")),
                error=str(e),
            )
            raise DeliveryRunError(
                "Delivery run creation failed",
                error=str(e),
            ) from e

    async def get_run_by_id(
        self,
        run_id: uuid.UUID,
        fresh: bool = False,
    ) -> Optional[DeliveryRun]:
        """
        Get run by ID.

        Args:
            run_id: Run identifier
            fresh: Overwrite any copy already held by the session

        Raises:
            DeliveryRunError: If query fails
        """
        try:
            stmt = select(DeliveryRun).where(DeliveryRun.id == run_id)
            if fresh:
                stmt = stmt.execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error("Failed to fetch delivery run", run_id=str(run_id), error=str(e))
            raise DeliveryRunError(
                "Failed to fetch delivery run",
                run_id=str(run_id),
                error=str(e),
            ) from e

    async def append_checkpoint(
        self,
        run_id: uuid.UUID,
        checkpoint: dict[str, Any],
        now: datetime,
    ) -> bool:
        """
        Append one checkpoint to an active run.

        Returns:
            False if the run does not exist or is no longer active

        Raises:
            DeliveryRunError: If update fails
        """
        try:
            stmt = (
                update(DeliveryRun)
                .where(
                    and_(
                        DeliveryRun.id == run_id,
                        DeliveryRun.status == DeliveryRunStatus.ACTIVE,
                    )
                )
                .values(
                    checkpoints=DeliveryRun.checkpoints.op("||")(
                        type_coerce([checkpoint], JSONB)
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            return result.rowcount == 1

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to append checkpoint", run_id=str(run_id), error=str(e))
            raise DeliveryRunError(
                "Failed to append checkpoint",
                run_id=str(run_id),
                error=str(e),
            ) from e

    async def close_run(self, run_id: uuid.UUID, end_time: datetime) -> bool:
        """
        Mark an active run completed.

        The row stays locked until commit, and checkpoint appends only match
        active runs, so the stored path is final once this returns True.

        Returns:
            False if the run was not active anymore

        Raises:
            DeliveryRunError: If update fails
        """
        try:
            stmt = (
                update(DeliveryRun)
                .where(
                    and_(
                        DeliveryRun.id == run_id,
                        DeliveryRun.status == DeliveryRunStatus.ACTIVE,
                    )
                )
                .values(
                    status=DeliveryRunStatus.COMPLETED,
                    end_time=end_time,
                    updated_at=end_time,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            return result.rowcount == 1

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to complete delivery run", run_id=str(run_id), error=str(e))
            raise DeliveryRunError(
                "Failed to complete delivery run",
                run_id=str(run_id),
                error=str(e),
            ) from e

    async def record_distance(self, run_id: uuid.UUID, total_distance: float) -> None:
        """
        Store the final distance of a closed run.

        Raises:
            DeliveryRunError: If update fails
        """
        try:
            stmt = (
                update(DeliveryRun)
                .where(DeliveryRun.id == run_id)
                .values(total_distance=total_distance)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(stmt)

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to record run distance", run_id=str(run_id), error=str(e))
            raise DeliveryRunError(
                "Failed to record run distance",
                run_id=str(run_id),
                error=str(e),
            ) from e

    async def get_active_runs_for_order(self, order_id: uuid.UUID) -> Sequence[DeliveryRun]:
        """
        Get active runs whose order list contains the order.

        Raises:
            DeliveryRunError: If query fails
        """
        try:
            result = await self.session.execute(
                select(DeliveryRun)
                .where(
                    and_(
                        DeliveryRun.status == DeliveryRunStatus.ACTIVE,
                        DeliveryRun.order_ids.contains([str(order_id)]),
                    )
                )
                .execution_options(populate_existing=True)
            )
            return result.scalars().all()

        except SQLAlchemyError as e:
            logger.error("Failed to correlate order with runs", order_id=str(order_id), error=str(e))
            raise DeliveryRunError(
                "Failed to correlate order with runs",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_active_run_for_deliveryman(
        self,
        deliveryman_id: uuid.UUID,
    ) -> Optional[DeliveryRun]:
        """
        Get the most recent active run of a courier.

        Raises:
            DeliveryRunError: If query fails
        """
        try:
            result = await self.session.execute(
                select(DeliveryRun)
                .where(
                    and_(
                        DeliveryRun.deliveryman_id == deliveryman_id,
                        DeliveryRun.status == DeliveryRunStatus.ACTIVE,
                    )
                )
                .order_by(DeliveryRun.start_time.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch active run",
                deliveryman_id=str(deliveryman_id),
                error=str(e),
            )
            raise DeliveryRunError(
                "Failed to fetch active run",
                deliveryman_id=str(deliveryman_id),
                error=str(e),
            ) from e


class DeliverymanRepository:
    """Repository for courier lookups and duty updates."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, deliveryman_id: uuid.UUID) -> Optional[Deliveryman]:
        """
        Get courier by ID.

        Raises:
            DeliveryRunError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Deliveryman).where(Deliveryman.id == deliveryman_id)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error("Failed to fetch courier", deliveryman_id=str(deliveryman_id), error=str(e))
            raise DeliveryRunError(
                "Failed to fetch courier",
                deliveryman_id=str(deliveryman_id),
                error=str(e),
            ) from e

    async def update_duty(
        self,
        deliveryman_id: uuid.UUID,
        status: DutyStatus,
        order_id: Optional[uuid.UUID],
    ) -> None:
        """
        Set a courier's duty status and current order.

        Raises:
            DeliveryRunError: If update fails
        """
        try:
            await self.session.execute(
                update(Deliveryman)
                .where(Deliveryman.id == deliveryman_id)
                .values(status=status, order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            logger.info(
                "Courier duty updated",
                deliveryman_id=str(deliveryman_id),
                status=status.value,
                order_id=str(order_id) if order_id else None,
            )

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to update courier duty", deliveryman_id=str(deliveryman_id), error=str(e))
            raise DeliveryRunError(
                "Failed to update courier duty",
                deliveryman_id=str(deliveryman_id),
                error=str(e),
            ) from e
