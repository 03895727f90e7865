"""
Order service orchestrating the delivery order lifecycle.

This module implements the OrderService class for creating orders, applying
status transitions through the state machine, persisting them as
compare-and-swap writes with bounded retries, keeping courier duty state in
step, and announcing every committed change on the order's change feed.
Includes order validation, one-shot reads with a fail-fast budget, the
daily neglected-order sweep, and structured logging.
"""

import asyncio
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence, Union

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.cache.redis_client import RedisClient
from pharmadelivery.core.config import Settings, get_settings
from pharmadelivery.core.logging import get_logger, log_performance
from pharmadelivery.core.timeutils import previous_local_day_bounds, utc_now
from pharmadelivery.database.models.order import Order
from pharmadelivery.services.analytics.sync_queue import AnalyticsSyncQueue
from pharmadelivery.services.delivery_runs.enums import DutyStatus
from pharmadelivery.services.delivery_runs.repository import (
    DeliveryRunError,
    DeliverymanNotFoundError,
    DeliverymanRepository,
)
from pharmadelivery.services.orders.enums import (
    NEGLECTED_CANCEL_REASON,
    ActorRole,
    OrderStatus,
)
from pharmadelivery.services.orders.formatting import format_phone
from pharmadelivery.services.orders.ledger import StatusHistoryEntry
from pharmadelivery.services.orders.metrics import ConflictCounter
from pharmadelivery.services.orders.repository import (
    OrderNotFoundError,
    OrderRepository,
    OrderRepositoryError,
)
from pharmadelivery.services.orders.state_machine import (
    InvalidTransitionError,
    OrderStateMachine,
    get_order_state_machine,
)
from pharmadelivery.services.orders.timing import calculate_delivery_timings
from pharmadelivery.services.realtime.publisher import ChangePublisher

logger = get_logger(__name__)


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderValidationError(OrderServiceError):
    """Raised when order validation fails."""

    pass


class OrderProcessingError(OrderServiceError):
    """Raised when order processing fails."""

    pass


class TransitionConflictError(OrderServiceError):
    """Raised when concurrent writers kept winning the version race."""

    pass


class NetworkUnavailableError(OrderServiceError):
    """Raised when a one-shot read cannot reach the store in time."""

    def __init__(self, message: str, retry_after: int = 5, **context: Any):
        super().__init__(message, **context)
        self.retry_after = retry_after


def _is_connection_failure(error: BaseException) -> bool:
    cause = error.__cause__ if isinstance(error, OrderRepositoryError) else error
    if isinstance(cause, (OperationalError, InterfaceError)):
        return True
    if isinstance(cause, DBAPIError) and cause.connection_invalidated:
        return True
    return isinstance(cause, (OSError, ConnectionError))


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Human-readable order number, e.g. ``PED-20240501153000-1A2B3C``."""
    stamp = (now or utc_now()).strftime("%Y%m%d%H%M%S")
    return f"PED-{stamp}-{uuid.uuid4().hex[:6].upper()}"


class OrderService:
    """
    Order service orchestrating the order lifecycle.

    Every status change goes through the state machine and is written as a
    compare-and-swap on the order version. Conflicts are counted, the order
    is re-read and the transition re-validated against the fresh state.

    Attributes:
        repository: Order repository for data access
        state_machine: State machine for order lifecycle management
        publisher: Change feed publisher
        analytics_queue: Warehouse sync queue
        conflicts: Compare-and-swap conflict counter
    """

    def __init__(
        self,
        session: AsyncSession,
        redis_client: Optional[RedisClient] = None,
        state_machine: Optional[OrderStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize order service.

        Args:
            session: Async database session
            redis_client: Redis client for notifications and counters
            state_machine: State machine override
            settings: Settings override
        """
        self.session = session
        self.settings = settings or get_settings()
        self.repository = OrderRepository(session)
        self.deliverymen = DeliverymanRepository(session)
        self.state_machine = state_machine or get_order_state_machine(
            self.settings.strict_transitions
        )
        self.publisher = ChangePublisher(redis_client)
        self.analytics_queue = AnalyticsSyncQueue(redis_client)
        self.conflicts = ConflictCounter(redis_client)

    async def create_order(
        self,
        customer_name: str,
        address: str,
        pharmacy_unit_id: str,
        items: Sequence[str],
        price_number: Union[Decimal, float, int, str],
        customer_phone: Optional[str] = None,
        location: Optional[dict[str, Any]] = None,
        number: Optional[str] = None,
        actor: ActorRole = ActorRole.SYSTEM,
    ) -> dict[str, Any]:
        """
        Create new order in ``Pendente`` with its first ledger entry.

        Args:
            customer_name: Customer name
            address: Delivery address
            pharmacy_unit_id: Unit handling the order
            items: Item descriptions in order
            price_number: Order total in reais
            customer_phone: Customer phone, formatted when it has 11 digits
            location: Optional ``{"lat", "lng"}`` of the address
            number: Order number, generated when omitted
            actor: Role creating the order

        Returns:
            Created order document

        Raises:
            OrderValidationError: If validation fails
            OrderProcessingError: If order creation fails
        """
        price = self._validate_order_data(customer_name, address, pharmacy_unit_id, price_number)
        now = utc_now()
        number = (number or "").strip() or generate_order_number(now)

        entry = StatusHistoryEntry(
            status=OrderStatus.PENDING.value,
            timestamp=now,
            actor=actor.value,
        )

        try:
            order = await self.repository.create_order(
                number=number,
                status=OrderStatus.PENDING,
                created_at=now,
                updated_at=now,
                last_status_update=now,
                customer_name=customer_name.strip(),
                customer_phone=format_phone(customer_phone),
                address=address.strip(),
                pharmacy_unit_id=pharmacy_unit_id,
                items=[str(item) for item in items],
                price_number=price,
                location=location,
                status_history=[entry.to_document()],
                version=1,
            )
            await self.session.commit()

        except OrderRepositoryError as e:
            raise OrderProcessingError(
                "Failed to create order",
                order_number=number,
                error=str(e),
            ) from e

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.number,
            pharmacy_unit_id=pharmacy_unit_id,
        )
        await self.publisher.order_changed(order.id, order.version)
        return order.to_document()

    async def get_order_model(self, order_id: uuid.UUID) -> Order:
        """
        Load an order or fail.

        Raises:
            OrderNotFoundError: If order not found
        """
        order = await self.repository.get_order_by_id(order_id, fresh=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def get_order(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Get order details.

        Raises:
            OrderNotFoundError: If order not found
            OrderProcessingError: If retrieval fails
        """
        try:
            order = await self.get_order_model(order_id)
        except OrderNotFoundError:
            raise
        except OrderRepositoryError as e:
            raise OrderProcessingError(
                "Failed to retrieve order",
                order_id=str(order_id),
                error=str(e),
            ) from e
        return order.to_document()

    async def search_order_by_id(self, term: str) -> dict[str, Any]:
        """
        One-shot lookup by order id or order number.

        The read is bounded by ``read_timeout_seconds``; it fails fast
        instead of waiting on an unreachable store.

        Args:
            term: Order UUID or human-readable number

        Returns:
            Order document

        Raises:
            OrderNotFoundError: If no order matches
            NetworkUnavailableError: If the store cannot be reached in time
        """
        term = (term or "").strip()
        if not term:
            raise OrderValidationError("Search term is required")

        timeout = self.settings.read_timeout_seconds
        try:
            order = await asyncio.wait_for(self._lookup(term), timeout=timeout)

        except asyncio.TimeoutError as e:
            logger.warning("Order search timed out", term=term, timeout_seconds=timeout)
            raise NetworkUnavailableError(
                "Order lookup timed out",
                retry_after=max(int(timeout), 1),
                term=term,
            ) from e
        except (OrderRepositoryError, OSError, ConnectionError) as e:
            if not _is_connection_failure(e):
                raise
            logger.warning("Order search could not reach the store", term=term, error=str(e))
            raise NetworkUnavailableError(
                "Order store unavailable",
                retry_after=max(int(timeout), 1),
                term=term,
            ) from e

        if order is None:
            raise OrderNotFoundError("Order not found", term=term)
        return order.to_document()

    async def _lookup(self, term: str) -> Optional[Order]:
        try:
            order_id = uuid.UUID(term)
        except ValueError:
            return await self.repository.get_order_by_number(term)
        return await self.repository.get_order_by_id(order_id, fresh=True)

    async def apply_transition(
        self,
        order_id: uuid.UUID,
        target_status: OrderStatus,
        actor: ActorRole,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        deliveryman_id: Optional[uuid.UUID] = None,
    ) -> dict[str, Any]:
        """
        Apply a status transition with compare-and-swap retries.

        Args:
            order_id: Order identifier
            target_status: Desired status
            actor: Role of the acting party
            reason: Reason, required when cancelling
            note: Free-text ledger annotation
            deliveryman_id: Courier record of a courier actor

        Returns:
            Updated order document

        Raises:
            OrderNotFoundError: If order not found
            InvalidTransitionError: If the transition is rejected
            TransitionConflictError: If retries are exhausted
            OrderProcessingError: If the write fails
        """
        try:
            courier = None
            if deliveryman_id is not None:
                courier = await self.deliverymen.get_by_id(deliveryman_id)
                if courier is None:
                    raise DeliverymanNotFoundError(
                        "Courier not found",
                        deliveryman_id=str(deliveryman_id),
                    )

            with log_performance(logger, "order_transition", order_id=str(order_id)):
                order, changes = await self._write_transition(
                    order_id, target_status, actor, reason, note, courier
                )
                await self._update_courier_duty(order, target_status)
                await self.session.commit()

        except (OrderRepositoryError, DeliveryRunError, SQLAlchemyError) as e:
            if isinstance(e, (OrderNotFoundError, DeliverymanNotFoundError)):
                raise
            raise OrderProcessingError(
                "Failed to update order status",
                order_id=str(order_id),
                error=str(e),
            ) from e

        logger.info(
            "Order transition applied",
            order_id=str(order.id),
            to_status=target_status.value,
            actor=actor.value,
            version=order.version,
        )

        if target_status.is_terminal():
            await self.analytics_queue.enqueue_order(order.id)
        await self.publisher.order_changed(order.id, order.version)
        return order.to_document()

    async def _write_transition(
        self,
        order_id: uuid.UUID,
        target_status: OrderStatus,
        actor: ActorRole,
        reason: Optional[str],
        note: Optional[str],
        courier: Any,
    ) -> tuple[Order, dict[str, Any]]:
        max_retries = self.settings.transition_max_retries

        for attempt in range(max_retries + 1):
            order = await self.get_order_model(order_id)
            expected_version = order.version
            changes = self.state_machine.plan_transition(
                order,
                target_status,
                actor,
                reason=reason,
                note=note,
                courier=courier,
                now=utc_now(),
            )

            if await self.repository.compare_and_swap(order.id, expected_version, changes):
                return await self.get_order_model(order_id), changes

            total = await self.conflicts.record()
            logger.warning(
                "Order transition conflict",
                order_id=str(order_id),
                expected_version=expected_version,
                to_status=target_status.value,
                attempt=attempt + 1,
                conflicts_total=total,
            )

        raise TransitionConflictError(
            "Order was modified concurrently, please retry",
            order_id=str(order_id),
            attempts=max_retries + 1,
        )

    async def _update_courier_duty(self, order: Order, target_status: OrderStatus) -> None:
        """Keep the assigned courier's duty state in step with the order."""
        courier_id = order.delivery_man_id
        if courier_id is None:
            return

        if target_status == OrderStatus.IN_DELIVERY:
            await self.deliverymen.update_duty(courier_id, DutyStatus.DELIVERING, order.id)
            return

        if target_status not in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            return

        courier = await self.deliverymen.get_by_id(courier_id)
        if courier is None or courier.order_id not in (None, order.id):
            return

        remaining = [
            other
            for other in await self.repository.get_courier_orders_in_delivery(courier_id)
            if other.id != order.id
        ]
        if remaining:
            await self.deliverymen.update_duty(courier_id, DutyStatus.DELIVERING, remaining[0].id)
        else:
            await self.deliverymen.update_duty(courier_id, DutyStatus.RETURNING, None)

    async def reactivate_order(
        self,
        order_id: uuid.UUID,
        actor: ActorRole,
        note: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Bring a cancelled order back to ``Em Preparação``.

        Raises:
            TransitionNotPermittedError: If the role may not reactivate
            InvalidTransitionError: If the order is not cancelled
        """
        return await self.apply_transition(
            order_id,
            OrderStatus.IN_PREPARATION,
            actor,
            note=note,
        )

    async def update_multiple_order_status(
        self,
        order_ids: Sequence[uuid.UUID],
        target_status: OrderStatus,
        actor: ActorRole,
        reason: Optional[str] = None,
        deliveryman_id: Optional[uuid.UUID] = None,
    ) -> dict[str, Any]:
        """
        Transition several orders independently.

        Returns:
            ``{"updated": [documents], "failed": [{"orderId", "error", "code"}]}``
        """
        updated: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []

        for order_id in dict.fromkeys(order_ids):
            try:
                updated.append(
                    await self.apply_transition(
                        order_id,
                        target_status,
                        actor,
                        reason=reason,
                        deliveryman_id=deliveryman_id,
                    )
                )
            except (
                InvalidTransitionError,
                OrderRepositoryError,
                OrderServiceError,
                DeliveryRunError,
            ) as e:
                await self.session.rollback()
                failed.append(
                    {
                        "orderId": str(order_id),
                        "error": str(e),
                        "code": type(e).__name__,
                    }
                )

        logger.info(
            "Batch order transition finished",
            to_status=target_status.value,
            updated=len(updated),
            failed=len(failed),
        )
        return {"updated": updated, "failed": failed}

    async def get_delivery_timings(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Timing derived from the order's ledger.

        Raises:
            OrderNotFoundError: If order not found
        """
        order = await self.get_order_model(order_id)
        timings = calculate_delivery_timings(order.status_history)
        return {
            "orderId": str(order.id),
            "status": order.status.value,
            "timings": timings.to_dict() if timings else None,
        }

    async def cancel_neglected_orders(self, now: Optional[datetime] = None) -> int:
        """
        Cancel yesterday's orders that were never finished.

        "Yesterday" is the previous calendar day in the business timezone.

        Returns:
            Number of orders cancelled
        """
        start, end = previous_local_day_bounds(self.settings.business_timezone, now)
        orders = await self.repository.get_open_orders_created_between(start, end)
        order_ids = [order.id for order in orders]

        logger.info(
            "Neglected order sweep started",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            candidates=len(order_ids),
        )

        cancelled = 0
        for order_id in order_ids:
            try:
                await self.apply_transition(
                    order_id,
                    OrderStatus.CANCELLED,
                    ActorRole.SYSTEM,
                    reason=NEGLECTED_CANCEL_REASON,
                )
                cancelled += 1
            except (InvalidTransitionError, OrderRepositoryError, OrderServiceError) as e:
                await self.session.rollback()
                logger.warning(
                    "Neglected order not cancelled",
                    order_id=str(order_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info("Neglected order sweep finished", cancelled=cancelled, candidates=len(order_ids))
        return cancelled

    def _validate_order_data(
        self,
        customer_name: str,
        address: str,
        pharmacy_unit_id: str,
        price_number: Union[Decimal, float, int, str],
    ) -> Decimal:
        """
        Validate order data.

        Returns:
            Price as a Decimal

        Raises:
            OrderValidationError: If validation fails
        """
        if not customer_name or not customer_name.strip():
            raise OrderValidationError("Customer name is required", field="customer_name")
        if not address or not address.strip():
            raise OrderValidationError("Delivery address is required", field="address")
        if not pharmacy_unit_id:
            raise OrderValidationError("Pharmacy unit is required", field="pharmacy_unit_id")

        try:
            price = Decimal(str(price_number))
        except (InvalidOperation, ValueError) as e:
            raise OrderValidationError(
                "Price must be a number",
                field="price_number",
                value=str(price_number),
            ) from e
        if not price.is_finite() or price < 0:
            raise OrderValidationError(
                "Price must be a non-negative amount",
                field="price_number",
                value=str(price_number),
            )
        return price
