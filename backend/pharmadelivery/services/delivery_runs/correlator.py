"""Live position lookup for orders.

An order does not point at its delivery run. The run carrying it is found by
asking which active runs list the order id; the order's live position is the
last checkpoint of that run.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.core.logging import get_logger
from pharmadelivery.services.delivery_runs.geo import path_distance
from pharmadelivery.services.delivery_runs.repository import DeliveryRunRepository

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class LivePosition:
    """Where the courier carrying an order currently is."""

    run_id: str
    deliveryman_id: str
    checkpoint: Optional[dict[str, Any]]
    distance_so_far: float

    @property
    def position_known(self) -> bool:
        return self.checkpoint is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "deliverymanId": self.deliveryman_id,
            "position": dict(self.checkpoint) if self.checkpoint else None,
            "positionKnown": self.position_known,
            "distanceSoFar": round(self.distance_so_far, 1),
        }


def _recency(run: Any) -> datetime:
    return run.updated_at or run.start_time or _EPOCH


def select_run(runs: Sequence[Any], order_id: Any) -> Optional[Any]:
    """
    Pick the run carrying an order among active candidates.

    More than one candidate is an inconsistency: it is logged and the most
    recently updated run wins.
    """
    candidates = [run for run in runs if run.is_active and run.carries(order_id)]
    if not candidates:
        return None
    if len(candidates) > 1:
        logger.warning(
            "CorrelationAmbiguity",
            order_id=str(order_id),
            run_ids=[str(run.id) for run in candidates],
        )
    return max(candidates, key=_recency)


def resolve_position(runs: Sequence[Any], order_id: Any) -> Optional[LivePosition]:
    """
    Live position of an order given the active runs claiming it.

    Returns:
        LivePosition, or None when no active run carries the order
    """
    run = select_run(runs, order_id)
    if run is None:
        return None
    checkpoints = list(run.checkpoints or [])
    return LivePosition(
        run_id=str(run.id),
        deliveryman_id=str(run.deliveryman_id),
        checkpoint=dict(checkpoints[-1]) if checkpoints else None,
        distance_so_far=path_distance(checkpoints),
    )


class DeliveryRunCorrelator:
    """Finds the active run carrying an order."""

    def __init__(self, session: AsyncSession):
        self.repository = DeliveryRunRepository(session)

    async def find_run(self, order_id: uuid.UUID) -> Optional[Any]:
        """The active run carrying the order, if any."""
        runs = await self.repository.get_active_runs_for_order(order_id)
        return select_run(runs, order_id)

    async def locate(self, order_id: uuid.UUID) -> Optional[LivePosition]:
        """
        Current position of the order.

        Args:
            order_id: Order identifier

        Returns:
            LivePosition with ``checkpoint`` None while the run has no
            checkpoints, or None when no active run carries the order
        """
        runs = await self.repository.get_active_runs_for_order(order_id)
        return resolve_position(runs, order_id)
