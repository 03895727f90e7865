"""Operational counters for order writes."""

from typing import Optional

from redis.exceptions import RedisError

from pharmadelivery.cache.redis_client import (
    ChannelKeyManager,
    RedisClient,
    get_channel_key_manager,
)
from pharmadelivery.core.logging import get_logger

logger = get_logger(__name__)

TRANSITION_CONFLICTS = "transition_conflicts"


class ConflictCounter:
    """Counts compare-and-swap conflicts on order writes."""

    def __init__(
        self,
        redis_client: Optional[RedisClient],
        key_manager: Optional[ChannelKeyManager] = None,
    ):
        self.redis = redis_client
        self.keys = key_manager or get_channel_key_manager()

    @property
    def key(self) -> str:
        return self.keys.metric_key(TRANSITION_CONFLICTS)

    async def record(self) -> Optional[int]:
        """Increment the counter, returning the new total when available."""
        if self.redis is None:
            return None
        try:
            return await self.redis.incr(self.key)
        except (RedisError, ConnectionError) as e:
            logger.error("Failed to record transition conflict", error=str(e))
            return None

    async def value(self) -> int:
        """
        Current counter value.

        Raises:
            RedisError: If Redis operation fails
        """
        if self.redis is None:
            return 0
        raw = await self.redis.get(self.key)
        return int(raw) if raw else 0
