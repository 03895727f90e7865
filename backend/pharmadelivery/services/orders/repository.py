"""
Order data access repository with transaction support.

This module implements the OrderRepository class providing async methods for
creating orders, reading them by id or number, and writing status changes as
compare-and-swap statements guarded by the order version. Review resolution
is a conditional single-statement update. Includes comprehensive error
handling with structured logging.
"""

import uuid
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.core.logging import get_logger
from pharmadelivery.database.models.order import Order
from pharmadelivery.services.orders.enums import OrderStatus

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when order is not found."""

    pass


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class OrderUpdateError(OrderRepositoryError):
    """Raised when order update fails."""

    pass


class OrderRepository:
    """
    Repository for order data access operations.

    Provides async methods for creating and reading orders and for the
    version-guarded writes every status change and review goes through.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def create_order(self, **fields: Any) -> Order:
        """
        Insert a new order.

        Args:
            **fields: Order column values, status history included

        Returns:
            Created order with server defaults loaded

        Raises:
            OrderCreationError: If order creation fails
        """
        order_number = fields.get("number")
        try:
            order = Order(**fields)
            self.session.add(order)
            await self.session.flush()
            await self.session.refresh(order)

            logger.info(
                "Order created successfully",
                order_id=str(order.id),
                order_number=order_number,
                item_count=len(order.items or []),
            )
            return order

        except IntegrityError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - integrity error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                order_number=order_number,
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - database error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                order_number=order_number,
                error=str(e),
            ) from e

    async def get_order_by_id(
        self,
        order_id: uuid.UUID,
        fresh: bool = False,
    ) -> Optional[Order]:
        """
        Get order by ID.

        Args:
            order_id: Order identifier
            fresh: Overwrite any copy already held by the session

        Returns:
            Order if found, None otherwise

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            stmt = select(Order).where(Order.id == order_id)
            if fresh:
                stmt = stmt.execution_options(populate_existing=True)

            result = await self.session.execute(stmt)
            order = result.scalar_one_or_none()

            if order is None:
                logger.debug("Order not found", order_id=str(order_id))
            return order

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_order_by_number(self, order_number: str) -> Optional[Order]:
        """
        Get order by order number.

        Args:
            order_number: Human-readable order number

        Returns:
            Order if found, None otherwise

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order).where(Order.number == order_number)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order by number",
                order_number=order_number,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order by number",
                order_number=order_number,
                error=str(e),
            ) from e

    async def compare_and_swap(
        self,
        order_id: uuid.UUID,
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> bool:
        """
        Write changes only if the order is still at ``expected_version``.

        Status, ledger and courier fields land in one statement, and the
        version is incremented with them.

        Args:
            order_id: Order identifier
            expected_version: Version the changes were computed against
            changes: Column values to write

        Returns:
            True if the row was updated, False on a version conflict

        Raises:
            OrderUpdateError: If update fails
        """
        try:
            stmt = (
                update(Order)
                .where(and_(Order.id == order_id, Order.version == expected_version))
                .values(**changes, version=Order.version + 1)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            swapped = result.rowcount == 1

            logger.debug(
                "Order compare-and-swap executed",
                order_id=str(order_id),
                expected_version=expected_version,
                swapped=swapped,
            )
            return swapped

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to update order",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderUpdateError(
                "Failed to update order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def resolve_review(
        self,
        order_id: uuid.UUID,
        now: datetime,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> bool:
        """
        Close the review prompt of a delivered order, at most once.

        With a rating the review is recorded; without one the prompt is
        declined. The statement matches only delivered orders whose prompt
        is still open.

        Returns:
            True if this call resolved the prompt

        Raises:
            OrderUpdateError: If update fails
        """
        values: dict[str, Any] = {
            "review_requested": True,
            "updated_at": now,
            "version": Order.version + 1,
        }
        if rating is not None:
            values.update(rating=rating, review_comment=comment, review_date=now)

        try:
            stmt = (
                update(Order)
                .where(
                    and_(
                        Order.id == order_id,
                        Order.status == OrderStatus.DELIVERED,
                        Order.review_requested.is_(False),
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            return result.rowcount == 1

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to resolve order review",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderUpdateError(
                "Failed to resolve order review",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_open_orders_created_between(
        self,
        start: datetime,
        end: datetime,
    ) -> Sequence[Order]:
        """
        Get orders created in ``[start, end)`` that are neither delivered
        nor cancelled.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order)
                .where(
                    and_(
                        Order.created_at >= start,
                        Order.created_at < end,
                        Order.status.notin_(
                            [OrderStatus.DELIVERED, OrderStatus.CANCELLED]
                        ),
                    )
                )
                .order_by(Order.created_at)
            )
            return result.scalars().all()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch open orders",
                start=start.isoformat(),
                end=end.isoformat(),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch open orders",
                error=str(e),
            ) from e

    async def get_courier_orders_in_delivery(
        self,
        delivery_man_id: uuid.UUID,
    ) -> Sequence[Order]:
        """
        Get the orders a courier is currently carrying.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order)
                .where(
                    and_(
                        Order.delivery_man_id == delivery_man_id,
                        Order.status == OrderStatus.IN_DELIVERY,
                    )
                )
                .order_by(Order.last_status_update)
                .execution_options(populate_existing=True)
            )
            return result.scalars().all()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch courier orders",
                delivery_man_id=str(delivery_man_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch courier orders",
                delivery_man_id=str(delivery_man_id),
                error=str(e),
            ) from e
