"""
Queue of finished orders and runs awaiting export to the data warehouse.

The warehouse loader lives outside this service. Entities are queued once
when they reach a final state and drained in batches by the loader.
"""

import uuid
from typing import Optional

from redis.exceptions import RedisError

from pharmadelivery.cache.redis_client import (
    ChannelKeyManager,
    RedisClient,
    get_channel_key_manager,
)
from pharmadelivery.core.logging import get_logger

logger = get_logger(__name__)

ORDERS = "orders"
RUNS = "runs"


class AnalyticsSyncQueue:
    """De-duplicated Redis queue of entity ids pending warehouse sync."""

    def __init__(
        self,
        redis_client: Optional[RedisClient],
        key_manager: Optional[ChannelKeyManager] = None,
    ):
        self.redis = redis_client
        self.keys = key_manager or get_channel_key_manager()

    async def _enqueue(self, entity: str, entity_id: uuid.UUID) -> bool:
        if self.redis is None:
            return False
        try:
            queued = await self.redis.enqueue_unique(
                self.keys.analytics_queue(entity),
                self.keys.analytics_members(entity),
                str(entity_id),
            )
            if queued:
                logger.info("Queued for analytics sync", entity=entity, entity_id=str(entity_id))
            return queued
        except (RedisError, ConnectionError) as e:
            logger.error(
                "Failed to queue analytics sync",
                entity=entity,
                entity_id=str(entity_id),
                error=str(e),
            )
            return False

    async def enqueue_order(self, order_id: uuid.UUID) -> bool:
        """Queue a delivered or cancelled order."""
        return await self._enqueue(ORDERS, order_id)

    async def enqueue_run(self, run_id: uuid.UUID) -> bool:
        """Queue a completed delivery run."""
        return await self._enqueue(RUNS, run_id)

    async def drain(self, entity: str, batch: int = 100) -> list[str]:
        """
        Pop up to ``batch`` ids for the warehouse loader.

        Args:
            entity: ``orders`` or ``runs``
            batch: Maximum ids returned

        Raises:
            ValueError: If the entity type is unknown
            RedisError: If Redis operation fails
        """
        if entity not in (ORDERS, RUNS):
            raise ValueError(f"Unknown analytics entity: {entity}")
        if self.redis is None or batch <= 0:
            return []
        return await self.redis.dequeue_many(
            self.keys.analytics_queue(entity),
            self.keys.analytics_members(entity),
            batch,
        )

    async def pending(self, entity: str) -> int:
        """Number of ids waiting for the loader."""
        if self.redis is None:
            return 0
        return await self.redis.queue_length(self.keys.analytics_queue(entity))
