"""
Deliveryman model for courier duty state.

Couriers are managed by the back office; this service only reads their
identity and payout key and updates their duty status and the order they
are currently carrying.
"""

import uuid
from typing import Any, Optional

from sqlalchemy import Enum as SQLEnum, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from pharmadelivery.database.base import BaseModel, create_table_args
from pharmadelivery.services.delivery_runs.enums import DutyStatus


class Deliveryman(BaseModel):
    """
    Courier working for a pharmacy unit.

    Attributes:
        id: Unique courier identifier (UUID)
        name: Full name
        pharmacy_unit_id: Unit the courier works for
        status: Duty state
        order_id: Order currently occupying the courier, if any
        license_plate: Plate of the vehicle currently in use
        chave_pix: Payout key disclosed to customers for tips
    """

    __tablename__ = "deliverymen"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Courier full name",
    )

    pharmacy_unit_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Pharmacy unit the courier works for",
    )

    status: Mapped[DutyStatus] = mapped_column(
        SQLEnum(
            DutyStatus,
            name="duty_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=DutyStatus.OFF_DUTY,
        server_default=DutyStatus.OFF_DUTY.value,
        comment="Courier duty state",
    )

    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Order currently being carried",
    )

    license_plate: Mapped[Optional[str]] = mapped_column(
        String(16),
        nullable=True,
        comment="Plate of the vehicle in use",
    )

    chave_pix: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="PIX payout key for tips",
    )

    __table_args__ = create_table_args(
        Index("ix_deliverymen_unit_status", "pharmacy_unit_id", "status"),
        comment="Couriers and their duty state",
    )

    def to_document(self) -> dict[str, Any]:
        """Serialize the courier without the payout key."""
        return {
            "id": str(self.id),
            "name": self.name,
            "pharmacyUnitId": self.pharmacy_unit_id,
            "status": self.status.value,
            "orderId": str(self.order_id) if self.order_id else None,
            "licensePlate": self.license_plate,
        }
