"""
Post-delivery review API endpoints.

Customers rate a delivered order once, or decline to; either answer closes
the prompt. The courier's tip key is disclosed independently of the review.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter

from pharmadelivery.api.deps import DatabaseSession, RedisDep, ReviewActor
from pharmadelivery.api.errors import DOMAIN_ERRORS, to_http_exception
from pharmadelivery.schemas.orders import (
    ReviewStateResponse,
    ReviewSubmitRequest,
    TipKeyResponse,
)
from pharmadelivery.services.orders.review import ReviewWorkflow
from pharmadelivery.services.realtime.visibility import ViewRole, apply_view

router = APIRouter(prefix="/orders", tags=["reviews"])


@router.get(
    "/{order_id}/review",
    response_model=ReviewStateResponse,
    summary="Review eligibility",
)
async def get_review_state(
    order_id: UUID,
    actor: ReviewActor,
    db: DatabaseSession,
) -> dict[str, Any]:
    workflow = ReviewWorkflow(db)
    try:
        return await workflow.get_review_state(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.post(
    "/{order_id}/review",
    summary="Submit review",
    description="Record rating and comment; repeated submissions keep the first",
)
async def submit_review(
    order_id: UUID,
    request: ReviewSubmitRequest,
    actor: ReviewActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """
    Submit a review.

    Raises:
        HTTPException: 400 if the order is not delivered or input is invalid
    """
    workflow = ReviewWorkflow(db, redis)
    try:
        document = await workflow.submit_review(order_id, request.rating, request.comment)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return apply_view(document, ViewRole.from_actor(actor.role))


@router.post(
    "/{order_id}/review/decline",
    summary="Decline review",
)
async def decline_review(
    order_id: UUID,
    actor: ReviewActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    workflow = ReviewWorkflow(db, redis)
    try:
        document = await workflow.decline_review(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return apply_view(document, ViewRole.from_actor(actor.role))


@router.get(
    "/{order_id}/tip",
    response_model=Optional[TipKeyResponse],
    summary="Courier tip key",
    description="PIX key of the courier assigned to the order, null when unavailable",
)
async def get_tip_key(
    order_id: UUID,
    actor: ReviewActor,
    db: DatabaseSession,
) -> Optional[dict[str, Any]]:
    workflow = ReviewWorkflow(db)
    try:
        return await workflow.get_tip_key(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
