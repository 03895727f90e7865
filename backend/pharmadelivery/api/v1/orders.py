"""
Order lifecycle API endpoints.

This module implements the FastAPI router for order creation, lookup, status
transitions, reactivation, batch transitions, delivery timings and live
position. Documents are filtered by the caller's view before they are
returned.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Request, status

from pharmadelivery.api.deps import (
    CurrentActor,
    DatabaseSession,
    ReactivationActor,
    RedisDep,
    StaffActor,
    TransitionActor,
)
from pharmadelivery.api.errors import DOMAIN_ERRORS, to_http_exception
from pharmadelivery.core.logging import get_logger
from pharmadelivery.core.rate_limit import SEARCH_RATE_LIMIT, limiter
from pharmadelivery.schemas.orders import (
    BatchTransitionRequest,
    BatchTransitionResponse,
    OrderCreateRequest,
    OrderReactivateRequest,
    OrderTransitionRequest,
)
from pharmadelivery.services.delivery_runs.correlator import DeliveryRunCorrelator
from pharmadelivery.services.orders.service import OrderService
from pharmadelivery.services.realtime.visibility import (
    ViewRole,
    apply_position_view,
    apply_view,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Create an order in Pendente with its first status history entry",
)
async def create_order(
    request: OrderCreateRequest,
    actor: StaffActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """
    Create new order.

    Raises:
        HTTPException: 400 if validation fails, 500 if creation fails
    """
    service = OrderService(db, redis)
    try:
        return await service.create_order(
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            address=request.address,
            pharmacy_unit_id=request.pharmacy_unit_id,
            items=request.items,
            price_number=request.price_number,
            location=request.location.model_dump() if request.location else None,
            number=request.number,
            actor=actor.role,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.get(
    "/search/{term}",
    summary="Search order by id or number",
    description="One-shot lookup that fails fast when the store is unreachable",
)
@limiter.limit(SEARCH_RATE_LIMIT)
async def search_order(
    request: Request,
    term: str,
    actor: CurrentActor,
    db: DatabaseSession,
) -> dict[str, Any]:
    """
    Search an order.

    Raises:
        HTTPException: 404 if not found, 503 if the store is unreachable
    """
    service = OrderService(db)
    try:
        document = await service.search_order_by_id(term)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return apply_view(document, ViewRole.from_actor(actor.role))


@router.post(
    "/transitions/batch",
    response_model=BatchTransitionResponse,
    summary="Transition several orders",
    description="Apply the same transition to each order independently",
)
async def batch_transition(
    request: BatchTransitionRequest,
    actor: TransitionActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """Batch transition; per-order failures are reported, not raised."""
    service = OrderService(db, redis)
    try:
        result = await service.update_multiple_order_status(
            request.order_ids,
            request.status,
            actor.role,
            reason=request.reason,
            deliveryman_id=actor.deliveryman_id,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e

    view = ViewRole.from_actor(actor.role)
    result["updated"] = [apply_view(document, view) for document in result["updated"]]
    return result


@router.get(
    "/{order_id}",
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> dict[str, Any]:
    """
    Get order document filtered for the caller.

    Raises:
        HTTPException: 404 if order not found
    """
    service = OrderService(db)
    try:
        document = await service.get_order(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return apply_view(document, ViewRole.from_actor(actor.role))


@router.post(
    "/{order_id}/transitions",
    summary="Apply status transition",
    description="Validate and apply a status transition as a compare-and-swap write",
)
async def transition_order(
    order_id: UUID,
    request: OrderTransitionRequest,
    actor: TransitionActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """
    Apply a status transition.

    Raises:
        HTTPException: 400 invalid transition, 403 role not permitted,
            404 not found, 409 concurrent modification
    """
    logger.info(
        "Transition requested",
        order_id=str(order_id),
        to_status=request.status.value,
        actor_role=actor.role.value,
    )
    service = OrderService(db, redis)
    try:
        document = await service.apply_transition(
            order_id,
            request.status,
            actor.role,
            reason=request.reason,
            note=request.note,
            deliveryman_id=actor.deliveryman_id,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return apply_view(document, ViewRole.from_actor(actor.role))


@router.post(
    "/{order_id}/reactivate",
    summary="Reactivate cancelled order",
)
async def reactivate_order(
    order_id: UUID,
    actor: ReactivationActor,
    db: DatabaseSession,
    redis: RedisDep,
    request: Optional[OrderReactivateRequest] = None,
) -> dict[str, Any]:
    """
    Move a cancelled order back to Em Preparação.

    Raises:
        HTTPException: 400 if the order is not cancelled
    """
    service = OrderService(db, redis)
    try:
        return await service.reactivate_order(
            order_id,
            actor.role,
            note=request.note if request else None,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.get(
    "/{order_id}/timings",
    summary="Delivery timings",
    description="Per-stage and total durations derived from the status history",
)
async def get_order_timings(
    order_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> dict[str, Any]:
    service = OrderService(db)
    try:
        return await service.get_delivery_timings(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.get(
    "/{order_id}/position",
    summary="Live courier position",
    description="Last checkpoint of the active delivery run carrying the order",
)
async def get_order_position(
    order_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> dict[str, Any]:
    """
    Live position; ``position`` is None while no run carries the order.

    Raises:
        HTTPException: 404 if order not found
    """
    service = OrderService(db)
    try:
        await service.get_order_model(order_id)
        position = await DeliveryRunCorrelator(db).locate(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e

    return {
        "orderId": str(order_id),
        "position": apply_position_view(
            position.to_dict() if position else None,
            ViewRole.from_actor(actor.role),
        ),
    }
