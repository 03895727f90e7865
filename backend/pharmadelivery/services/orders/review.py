"""
Post-delivery review workflow.

A delivered order offers its customer one review prompt. Submitting or
declining it closes the prompt for good: the close is one conditional
UPDATE that only matches delivered orders whose prompt is still open, so
racing submissions resolve to the first one and repeats are no-ops.
"""

import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.cache.redis_client import RedisClient
from pharmadelivery.core.logging import get_logger
from pharmadelivery.core.timeutils import utc_now
from pharmadelivery.database.models.order import Order
from pharmadelivery.services.delivery_runs.repository import DeliverymanRepository
from pharmadelivery.services.orders.enums import OrderStatus
from pharmadelivery.services.orders.formatting import short_name
from pharmadelivery.services.orders.repository import (
    OrderNotFoundError,
    OrderRepository,
)
from pharmadelivery.services.realtime.publisher import ChangePublisher

logger = get_logger(__name__)

MAX_COMMENT_LENGTH = 500
MIN_RATING = 1
MAX_RATING = 5


class ReviewError(Exception):
    """Base exception for review workflow errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class ReviewNotEligibleError(ReviewError):
    """Raised when the order cannot be reviewed."""

    pass


class ReviewValidationError(ReviewError):
    """Raised when rating or comment are invalid."""

    pass


def is_review_eligible(order: Any) -> bool:
    """The prompt shows only for delivered orders not yet resolved."""
    return order.status == OrderStatus.DELIVERED and not order.review_requested


def validate_review(rating: Any, comment: Optional[str]) -> Optional[str]:
    """
    Validate a review submission.

    Returns:
        The comment stripped, None when blank

    Raises:
        ReviewValidationError: If rating or comment are invalid
    """
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ReviewValidationError("Rating must be an integer", rating=rating)
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ReviewValidationError(
            f"Rating must be between {MIN_RATING} and {MAX_RATING}",
            rating=rating,
        )
    comment = comment.strip() if comment else None
    if comment and len(comment) > MAX_COMMENT_LENGTH:
        raise ReviewValidationError(
            f"Comment must be at most {MAX_COMMENT_LENGTH} characters",
            length=len(comment),
        )
    return comment or None


class ReviewWorkflow:
    """Gates the one-time rating prompt and tip key disclosure."""

    def __init__(self, session: AsyncSession, redis_client: Optional[RedisClient] = None):
        self.session = session
        self.repository = OrderRepository(session)
        self.deliverymen = DeliverymanRepository(session)
        self.publisher = ChangePublisher(redis_client)

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_order_by_id(order_id, fresh=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def get_review_state(self, order_id: uuid.UUID) -> dict[str, Any]:
        """Eligibility and current review values of an order."""
        order = await self._get_order(order_id)
        return {
            "orderId": str(order.id),
            "eligible": is_review_eligible(order),
            "reviewRequested": bool(order.review_requested),
            "rating": order.rating,
            "reviewComment": order.review_comment,
            "reviewDate": order.to_document()["reviewDate"],
        }

    async def submit_review(
        self,
        order_id: uuid.UUID,
        rating: int,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Record the customer's rating and comment.

        A second submission leaves the first one in place and returns the
        current state.

        Raises:
            ReviewValidationError: If rating or comment are invalid
            ReviewNotEligibleError: If the order was not delivered
            OrderNotFoundError: If order not found
        """
        comment = validate_review(rating, comment)
        return await self._resolve(order_id, rating=rating, comment=comment)

    async def decline_review(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Close the prompt without a rating.

        Raises:
            ReviewNotEligibleError: If the order was not delivered
            OrderNotFoundError: If order not found
        """
        return await self._resolve(order_id)

    async def _resolve(
        self,
        order_id: uuid.UUID,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        resolved = await self.repository.resolve_review(
            order_id,
            utc_now(),
            rating=rating,
            comment=comment,
        )
        if resolved:
            await self.session.commit()

        order = await self._get_order(order_id)

        if not resolved:
            if order.status != OrderStatus.DELIVERED:
                raise ReviewNotEligibleError(
                    "Only delivered orders can be reviewed",
                    order_id=str(order_id),
                    status=order.status.value,
                )
            logger.info("Review already resolved", order_id=str(order_id))
            return order.to_document()

        logger.info(
            "Review resolved",
            order_id=str(order_id),
            rated=rating is not None,
        )
        await self.publisher.order_changed(order.id, order.version)
        return order.to_document()

    async def get_tip_key(self, order_id: uuid.UUID) -> Optional[dict[str, Any]]:
        """
        Payout key of the courier who delivered the order.

        Returns:
            ``{"deliverymanName", "chavePix"}``, or None without courier or key
        """
        order = await self._get_order(order_id)
        if order.delivery_man_id is None:
            return None

        courier = await self.deliverymen.get_by_id(order.delivery_man_id)
        if courier is None or not courier.chave_pix:
            return None

        return {
            "deliverymanName": short_name(courier.name),
            "chavePix": courier.chave_pix,
        }
