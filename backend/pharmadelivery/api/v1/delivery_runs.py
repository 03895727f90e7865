"""
Delivery run API endpoints for the courier app.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from pharmadelivery.api.deps import (
    CourierActor,
    DatabaseSession,
    RedisDep,
    RunManagerActor,
)
from pharmadelivery.api.errors import DOMAIN_ERRORS, to_http_exception
from pharmadelivery.schemas.delivery_runs import CheckpointRequest, DeliveryRunStartRequest
from pharmadelivery.services.delivery_runs.service import DeliveryRunService
from pharmadelivery.services.orders.enums import ActorRole

router = APIRouter(prefix="/delivery-runs", tags=["delivery-runs"])


def _courier_record(actor: Any) -> UUID:
    if actor.deliveryman_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is not linked to a courier record",
        )
    return actor.deliveryman_id


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Start delivery run",
)
async def start_run(
    request: DeliveryRunStartRequest,
    actor: RunManagerActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """
    Open a run for the authenticated courier, or for any courier as admin.

    Raises:
        HTTPException: 404 courier not found, 409 run already active
    """
    if actor.role == ActorRole.COURIER:
        deliveryman_id = _courier_record(actor)
    elif request.deliveryman_id is not None:
        deliveryman_id = request.deliveryman_id
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="deliverymanId is required",
        )

    service = DeliveryRunService(db, redis)
    try:
        return await service.start_run(
            deliveryman_id,
            request.order_ids,
            pharmacy_unit_id=request.pharmacy_unit_id,
            motorcycle_id=request.motorcycle_id,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.get(
    "/active",
    summary="Resume active run",
)
async def get_active_run(
    actor: CourierActor,
    db: DatabaseSession,
) -> Optional[dict[str, Any]]:
    """The courier's open run, null when there is none."""
    service = DeliveryRunService(db)
    try:
        return await service.get_active_run_for_deliveryman(_courier_record(actor))
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.post(
    "/{run_id}/checkpoints",
    summary="Append checkpoint",
)
async def append_checkpoint(
    run_id: UUID,
    request: CheckpointRequest,
    actor: CourierActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """
    Append a GPS sample to an active run.

    Raises:
        HTTPException: 404 run not found, 409 run completed
    """
    service = DeliveryRunService(db, redis)
    try:
        run = await service.get_run(run_id)
        if run["deliverymanId"] != str(_courier_record(actor)):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Run belongs to another courier",
            )
        return await service.append_checkpoint(
            run_id,
            request.latitude,
            request.longitude,
            request.timestamp,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e


@router.post(
    "/{run_id}/complete",
    summary="Complete delivery run",
)
async def complete_run(
    run_id: UUID,
    actor: RunManagerActor,
    db: DatabaseSession,
    redis: RedisDep,
) -> dict[str, Any]:
    """
    Close a run; completing a completed run returns it unchanged.

    Raises:
        HTTPException: 404 run not found
    """
    service = DeliveryRunService(db, redis)
    try:
        if actor.role == ActorRole.COURIER:
            run = await service.get_run(run_id)
            if run["deliverymanId"] != str(_courier_record(actor)):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Run belongs to another courier",
                )
        return await service.complete_run(run_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
