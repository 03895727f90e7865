"""
Delivery run Pydantic schemas for API request validation.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field

from pharmadelivery.schemas.orders import CamelModel


class DeliveryRunStartRequest(CamelModel):
    """Request schema for starting a delivery run."""

    order_ids: list[UUID] = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Orders carried on this run",
    )
    deliveryman_id: Optional[UUID] = Field(
        None,
        description="Courier record, defaults to the authenticated courier",
    )
    pharmacy_unit_id: Optional[str] = Field(
        None,
        max_length=64,
        description="Departure unit, defaults to the courier's unit",
    )
    motorcycle_id: Optional[str] = Field(
        None,
        max_length=64,
        description="Vehicle used for the run",
    )


class CheckpointRequest(CamelModel):
    """Request schema for one GPS checkpoint."""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")
    timestamp: Optional[datetime] = Field(
        None,
        description="When the sample was taken, defaults to receipt time",
    )
