"""
Realtime order snapshots for customer, courier and admin observers.

A subscription listens on the order's change channel and, while a courier
run carries the order, on that run's channel too. Every notification
triggers a full re-read of the order through a fresh database session;
delivery timings and live position are recomputed from that read before a
snapshot is emitted. Snapshots identical to the previous one are dropped.

Subscriptions are scoped: ``RealtimeSyncBridge.subscribe`` is an async
context manager and releases every channel and the pub/sub connection on
exit. After a lost Redis connection the subscription reconnects with
backoff and resumes from the current full state.
"""

import asyncio
import hashlib
import json
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Optional

from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.cache.redis_client import (
    ChannelKeyManager,
    RedisClient,
    get_channel_key_manager,
)
from pharmadelivery.core.config import Settings, get_settings
from pharmadelivery.core.logging import get_logger
from pharmadelivery.database.connection import get_session
from pharmadelivery.services.delivery_runs.correlator import resolve_position, select_run
from pharmadelivery.services.delivery_runs.repository import DeliveryRunRepository
from pharmadelivery.services.orders.repository import OrderNotFoundError, OrderRepository
from pharmadelivery.services.orders.timing import calculate_delivery_timings
from pharmadelivery.services.realtime.visibility import (
    ViewRole,
    apply_position_view,
    apply_view,
)

logger = get_logger(__name__)

MAX_RECONNECT_DELAY_SECONDS = 30.0

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class StaleReadError(Exception):
    """Raised when a read returns an order older than the notified version."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


@dataclass(frozen=True)
class OrderSnapshot:
    """One view-filtered state of an order with its derived data."""

    order_id: str
    view: ViewRole
    order: dict[str, Any]
    timings: Optional[dict[str, Any]]
    position: Optional[dict[str, Any]]
    version: int
    run_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "order_snapshot",
            "orderId": self.order_id,
            "view": self.view.value,
            "order": self.order,
            "timings": self.timings,
            "position": self.position,
        }

    @property
    def fingerprint(self) -> str:
        """Content hash used to drop duplicate snapshots."""
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class OrderSubscription:
    """
    Async iterator of snapshots for one order and one view.

    Created and released by ``RealtimeSyncBridge.subscribe``.
    """

    def __init__(self, bridge: "RealtimeSyncBridge", order_id: uuid.UUID, view: ViewRole):
        self.bridge = bridge
        self.order_id = order_id
        self.view = view
        self.order_channel = bridge.keys.order_channel(order_id)
        self.run_channel: Optional[str] = None
        self._pubsub: Optional[PubSub] = None
        self._pending: deque[OrderSnapshot] = deque()
        self._last_fingerprint: Optional[str] = None
        self._closed = False

    @property
    def channels(self) -> list[str]:
        return [channel for channel in (self.order_channel, self.run_channel) if channel]

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """
        Subscribe and queue the current full state.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        self._pubsub = self.bridge.redis.pubsub()
        await self._pubsub.subscribe(self.order_channel)
        await self._refresh(force=True)
        logger.info(
            "Order subscription opened",
            order_id=str(self.order_id),
            view=self.view.value,
        )

    async def close(self) -> None:
        """Release every channel and the pub/sub connection."""
        if self._closed:
            return
        self._closed = True
        await self._release_pubsub()
        logger.info(
            "Order subscription closed",
            order_id=str(self.order_id),
            view=self.view.value,
        )

    async def _release_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.debug("Unsubscribe failed on a broken connection", error=str(e))
        finally:
            await pubsub.aclose()

    def __aiter__(self) -> "OrderSubscription":
        return self

    async def __anext__(self) -> OrderSnapshot:
        while True:
            if self._pending:
                return self._pending.popleft()
            if self._closed:
                raise StopAsyncIteration
            message = await self._next_message()
            if message is not None:
                await self._handle(message)

    async def _next_message(self) -> Optional[dict[str, Any]]:
        try:
            return await self._pubsub.get_message(timeout=None)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning(
                "Order subscription lost its connection",
                order_id=str(self.order_id),
                error=str(e),
            )
            await self._reconnect()
            return None

    async def _reconnect(self) -> None:
        """Re-subscribe with backoff, then resume from the full state."""
        await self._release_pubsub()
        attempt = 0
        while not self._closed:
            delay = min(
                self.bridge.settings.subscription_reconnect_delay_seconds * (2 ** attempt),
                MAX_RECONNECT_DELAY_SECONDS,
            )
            await asyncio.sleep(delay)
            attempt += 1
            try:
                self._pubsub = self.bridge.redis.pubsub()
                await self._pubsub.subscribe(*self.channels)
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                logger.warning(
                    "Order subscription reconnect failed",
                    order_id=str(self.order_id),
                    attempt=attempt,
                    error=str(e),
                )
                await self._release_pubsub()
                continue

            logger.info(
                "Order subscription reconnected",
                order_id=str(self.order_id),
                attempts=attempt,
            )
            await self._refresh(force=True)
            return

    async def _handle(self, message: dict[str, Any]) -> None:
        try:
            payload = json.loads(message.get("data") or "{}")
        except (TypeError, ValueError):
            logger.warning("Malformed change notification", channel=message.get("channel"))
            payload = {}

        expected_version = payload.get("version") if payload.get("entity") == "order" else None
        await self._refresh(expected_version=expected_version)

    async def _refresh(self, expected_version: Optional[int] = None, force: bool = False) -> None:
        max_refetches = self.bridge.settings.stale_read_max_refetches
        snapshot: Optional[OrderSnapshot] = None

        for attempt in range(max_refetches + 1):
            try:
                snapshot = await self.bridge.build_snapshot(
                    self.order_id, self.view, expected_version
                )
                break
            except StaleReadError as e:
                logger.warning(
                    "StaleRead",
                    order_id=str(self.order_id),
                    attempt=attempt + 1,
                    **e.context,
                )
            except OrderNotFoundError:
                if force and self._last_fingerprint is None:
                    raise
                logger.info("Subscribed order disappeared", order_id=str(self.order_id))
                await self.close()
                return

        if snapshot is None:
            logger.warning(
                "Stale notification skipped",
                order_id=str(self.order_id),
                expected_version=expected_version,
            )
            return

        await self._sync_run_channel(snapshot.run_id)

        fingerprint = snapshot.fingerprint
        if force or fingerprint != self._last_fingerprint:
            self._last_fingerprint = fingerprint
            self._pending.append(snapshot)

    async def _sync_run_channel(self, run_id: Optional[str]) -> None:
        channel = self.bridge.keys.run_channel(run_id) if run_id else None
        if channel == self.run_channel or self._pubsub is None:
            return

        if self.run_channel is not None:
            await self._pubsub.unsubscribe(self.run_channel)
            logger.debug("Detached from run channel", order_id=str(self.order_id), channel=self.run_channel)
        if channel is not None:
            await self._pubsub.subscribe(channel)
            logger.debug("Attached to run channel", order_id=str(self.order_id), channel=channel)
        self.run_channel = channel


class RealtimeSyncBridge:
    """Opens order subscriptions and builds their snapshots."""

    def __init__(
        self,
        redis_client: RedisClient,
        session_factory: SessionFactory = get_session,
        settings: Optional[Settings] = None,
        key_manager: Optional[ChannelKeyManager] = None,
    ):
        self.redis = redis_client
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.keys = key_manager or get_channel_key_manager()

    async def build_snapshot(
        self,
        order_id: uuid.UUID,
        view: ViewRole,
        expected_version: Optional[int] = None,
    ) -> OrderSnapshot:
        """
        Read the order and its active run, then derive a snapshot.

        Raises:
            OrderNotFoundError: If the order does not exist
            StaleReadError: If the order is older than ``expected_version``
        """
        async with self.session_factory() as session:
            order = await OrderRepository(session).get_order_by_id(order_id, fresh=True)
            if order is None:
                raise OrderNotFoundError("Order not found", order_id=str(order_id))
            if expected_version is not None and order.version < expected_version:
                raise StaleReadError(
                    "Order read is older than the notified version",
                    read_version=order.version,
                    expected_version=expected_version,
                )
            runs = await DeliveryRunRepository(session).get_active_runs_for_order(order_id)
            document = order.to_document()

        run = select_run(runs, order_id)
        position = resolve_position([run] if run else [], order_id)
        timings = calculate_delivery_timings(document.get("statusHistory"))

        return OrderSnapshot(
            order_id=str(order_id),
            view=view,
            order=apply_view(document, view),
            timings=timings.to_dict() if timings else None,
            position=apply_position_view(position.to_dict() if position else None, view),
            version=document["version"],
            run_id=str(run.id) if run else None,
        )

    @asynccontextmanager
    async def subscribe(
        self,
        order_id: uuid.UUID,
        view: ViewRole,
    ) -> AsyncIterator[OrderSubscription]:
        """
        Open a subscription for the duration of the block.

        Example:
            >>> async with bridge.subscribe(order_id, ViewRole.CUSTOMER) as updates:
            ...     async for snapshot in updates:
            ...         await websocket.send_json(snapshot.to_dict())
        """
        subscription = OrderSubscription(self, order_id, view)
        try:
            await subscription.open()
            yield subscription
        finally:
            await subscription.close()
