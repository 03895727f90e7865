"""
Change notifications for orders and delivery runs.

Writers publish after commit. A notification only says that an entity
changed (and to which version); subscribers always re-read the full
document, so a lost notification is repaired by the next one.
"""

import uuid
from typing import Any, Iterable, Optional

from redis.exceptions import RedisError

from pharmadelivery.cache.redis_client import (
    ChannelKeyManager,
    RedisClient,
    get_channel_key_manager,
)
from pharmadelivery.core.logging import get_logger

logger = get_logger(__name__)


class ChangePublisher:
    """Publishes order and run change notifications on Redis channels."""

    def __init__(
        self,
        redis_client: Optional[RedisClient],
        key_manager: Optional[ChannelKeyManager] = None,
    ):
        self.redis = redis_client
        self.keys = key_manager or get_channel_key_manager()

    async def _publish(self, channel: str, message: dict[str, Any]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(channel, message)
        except (RedisError, ConnectionError) as e:
            # Subscribers resync from full state on their next notification
            logger.error(
                "Failed to publish change notification",
                channel=channel,
                error=str(e),
            )

    async def order_changed(self, order_id: uuid.UUID, version: Optional[int] = None) -> None:
        """
        Announce that an order changed.

        Args:
            order_id: Order identifier
            version: Version written, lets subscribers detect stale reads
        """
        await self._publish(
            self.keys.order_channel(order_id),
            {"entity": "order", "id": str(order_id), "version": version},
        )

    async def run_changed(
        self,
        run_id: uuid.UUID,
        order_ids: Iterable[Any] = (),
        notify_orders: bool = False,
    ) -> None:
        """
        Announce that a delivery run changed.

        Args:
            run_id: Run identifier
            order_ids: Orders carried by the run
            notify_orders: Also notify each carried order, used when the run
                starts or ends so order subscribers re-correlate
        """
        order_ids = [str(order_id) for order_id in order_ids]
        await self._publish(
            self.keys.run_channel(run_id),
            {"entity": "run", "id": str(run_id), "orderIds": order_ids},
        )
        if notify_orders:
            for order_id in order_ids:
                await self.order_changed(order_id)
