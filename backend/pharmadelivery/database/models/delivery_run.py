"""
DeliveryRun model for courier movement logs.

A run is one courier's continuous delivery circuit: it lists the orders being
carried and accumulates GPS checkpoints until the courier returns. Orders do
not reference runs; an order's run is found by querying active runs whose
``order_ids`` contain it.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from pharmadelivery.core.timeutils import isoformat
from pharmadelivery.database.base import BaseModel, create_table_args
from pharmadelivery.services.delivery_runs.enums import DeliveryRunStatus


class DeliveryRun(BaseModel):
    """
    Courier delivery circuit with its checkpoint trail.

    Attributes:
        id: Unique run identifier (UUID)
        deliveryman_id: Courier driving the run
        pharmacy_unit_id: Unit the run departed from
        motorcycle_id: Vehicle used, for the fleet collaborator
        status: active or completed
        order_ids: Order ids carried, as strings
        checkpoints: Ordered ``{latitude, longitude, timestamp}`` samples
        total_distance: Meters travelled, finalized at completion
        start_time: When the courier started the circuit
        end_time: When the run was completed
    """

    __tablename__ = "delivery_runs"

    deliveryman_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliverymen.id", ondelete="CASCADE"),
        nullable=False,
        comment="Courier driving the run",
    )

    pharmacy_unit_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Unit the run departed from",
    )

    motorcycle_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Vehicle used during the run",
    )

    status: Mapped[DeliveryRunStatus] = mapped_column(
        SQLEnum(
            DeliveryRunStatus,
            name="delivery_run_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=DeliveryRunStatus.ACTIVE,
        server_default=DeliveryRunStatus.ACTIVE.value,
        comment="Run lifecycle status",
    )

    order_ids: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
        comment="Ids of the orders carried",
    )

    checkpoints: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
        comment="Append-only GPS checkpoints",
    )

    total_distance: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        server_default=text("0"),
        comment="Distance travelled in meters",
    )

    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the run started",
    )

    end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the run was completed",
    )

    __table_args__ = create_table_args(
        Index("ix_delivery_runs_deliveryman_status", "deliveryman_id", "status"),
        Index(
            "ix_delivery_runs_order_ids_gin",
            "order_ids",
            postgresql_using="gin",
        ),
        CheckConstraint(
            "total_distance >= 0",
            name="ck_delivery_runs_distance_non_negative",
        ),
        CheckConstraint(
            "end_time IS NULL OR end_time >= start_time",
            name="ck_delivery_runs_end_after_start",
        ),
        comment="Courier movement logs",
    )

    @property
    def is_active(self) -> bool:
        return self.status == DeliveryRunStatus.ACTIVE

    @property
    def last_checkpoint(self) -> Optional[dict[str, Any]]:
        """Most recent checkpoint, None while the run has none."""
        if not self.checkpoints:
            return None
        return dict(self.checkpoints[-1])

    def carries(self, order_id: Any) -> bool:
        """Check whether the run lists the given order."""
        return str(order_id) in {str(value) for value in (self.order_ids or [])}

    def to_document(self) -> dict[str, Any]:
        """Serialize the run in its external document shape."""
        return {
            "id": str(self.id),
            "deliverymanId": str(self.deliveryman_id),
            "pharmacyUnitId": self.pharmacy_unit_id,
            "motorcycleId": self.motorcycle_id,
            "status": self.status.value,
            "orderIds": [str(value) for value in (self.order_ids or [])],
            "checkpoints": [dict(point) for point in (self.checkpoints or [])],
            "totalDistance": self.total_distance,
            "startTime": isoformat(self.start_time),
            "endTime": isoformat(self.end_time),
            "updatedAt": isoformat(self.updated_at),
        }
