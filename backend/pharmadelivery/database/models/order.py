"""
Order model for pharmacy delivery orders.

This module defines the Order model: one mutable row per order holding the
current status, courier assignment, review data and the embedded status
history ledger. The row carries a version counter; every status change is a
compare-and-swap on it, so the status field and the ledger append always
land in the same write.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from pharmadelivery.core.timeutils import isoformat
from pharmadelivery.database.base import BaseModel, create_table_args
from pharmadelivery.services.orders.enums import OrderStatus
from pharmadelivery.services.orders.formatting import format_price

ORDER_STATUS_DB_ENUM = SQLEnum(
    OrderStatus,
    name="order_status",
    values_callable=lambda enum: [member.value for member in enum],
    validate_strings=True,
)


class Order(BaseModel):
    """
    Pharmacy delivery order.

    Attributes:
        id: Unique order identifier (UUID)
        number: Human-readable order number
        status: Current lifecycle status
        last_status_update: When status last changed
        price_number: Order total in reais
        items: Ordered list of item descriptions
        address: Delivery address as typed by the store
        customer_name: Customer name
        customer_phone: Customer phone, formatted when 11 digits
        pharmacy_unit_id: Pharmacy unit handling the order
        delivery_man_id: Assigned courier, kept after cancellation for audit
        delivery_man_name: Courier display name at assignment time
        license_plate: Vehicle plate at assignment time
        location: Optional ``{"lat": ..., "lng": ...}`` of the address
        cancel_reason: Reason of the last cancellation
        rating: Customer rating, 1-5, set at most once
        review_comment: Customer comment, set at most once
        review_date: When the review was submitted
        review_requested: True once the review prompt was resolved
        status_history: Append-only ledger of transitions
        version: Compare-and-swap counter
    """

    __tablename__ = "orders"

    number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    status: Mapped[OrderStatus] = mapped_column(
        ORDER_STATUS_DB_ENUM,
        nullable=False,
        default=OrderStatus.PENDING,
        server_default=OrderStatus.PENDING.value,
        comment="Current order status",
    )

    last_status_update: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp of the last status change",
    )

    price_number: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Order total in BRL",
    )

    items: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
        comment="Ordered item descriptions",
    )

    address: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Delivery address",
    )

    customer_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Customer name",
    )

    customer_phone: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="Customer phone",
    )

    pharmacy_unit_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Pharmacy unit handling the order",
    )

    delivery_man_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliverymen.id", ondelete="SET NULL"),
        nullable=True,
        comment="Assigned courier",
    )

    delivery_man_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Courier name at assignment time",
    )

    license_plate: Mapped[Optional[str]] = mapped_column(
        String(16),
        nullable=True,
        comment="Vehicle plate at assignment time",
    )

    location: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Geocoded address as {lat, lng}",
    )

    cancel_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Reason of the last cancellation",
    )

    rating: Mapped[Optional[int]] = mapped_column(
        SmallInteger,
        nullable=True,
        comment="Customer rating from 1 to 5",
    )

    review_comment: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Customer review comment",
    )

    review_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the review was submitted",
    )

    review_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Review prompt resolved (submitted or declined)",
    )

    status_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
        comment="Append-only status transition ledger",
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default=text("1"),
        comment="Optimistic concurrency counter",
    )

    __table_args__ = create_table_args(
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_unit_status", "pharmacy_unit_id", "status"),
        Index("ix_orders_delivery_man_status", "delivery_man_id", "status"),
        CheckConstraint(
            "rating IS NULL OR (rating >= 1 AND rating <= 5)",
            name="ck_orders_rating_range",
        ),
        CheckConstraint(
            "price_number >= 0",
            name="ck_orders_price_non_negative",
        ),
        CheckConstraint(
            "rating IS NULL OR review_requested",
            name="ck_orders_rating_requires_review_resolution",
        ),
        comment="Pharmacy delivery orders with embedded status history",
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, number={self.number}, "
            f"status={self.status.value if self.status else None}, "
            f"version={self.version})>"
        )

    # Status flags are derived from status and never stored

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING

    @property
    def is_in_preparation(self) -> bool:
        return self.status == OrderStatus.IN_PREPARATION

    @property
    def is_in_delivery(self) -> bool:
        return self.status == OrderStatus.IN_DELIVERY

    @property
    def is_delivered(self) -> bool:
        return self.status == OrderStatus.DELIVERED

    @property
    def is_terminal(self) -> bool:
        """Check if order reached a terminal status."""
        return self.status is not None and self.status.is_terminal()

    @property
    def has_location(self) -> bool:
        """Orders without geocoded address are valid but flagged in views."""
        return bool(
            self.location
            and self.location.get("lat") is not None
            and self.location.get("lng") is not None
        )

    def to_document(self) -> dict[str, Any]:
        """
        Serialize the order in its external document shape.

        Returns:
            Dictionary with camelCase keys, including the derived flags
        """
        return {
            "id": str(self.id),
            "number": self.number,
            "status": self.status.value,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
            "lastStatusUpdate": isoformat(self.last_status_update),
            "price": format_price(self.price_number),
            "priceNumber": float(self.price_number) if self.price_number is not None else None,
            "items": list(self.items or []),
            "address": self.address,
            "customerName": self.customer_name,
            "customerPhone": self.customer_phone,
            "pharmacyUnitId": self.pharmacy_unit_id,
            "deliveryMan": str(self.delivery_man_id) if self.delivery_man_id else None,
            "deliveryManName": self.delivery_man_name,
            "licensePlate": self.license_plate,
            "location": dict(self.location) if self.location else None,
            "hasLocation": self.has_location,
            "isPending": self.is_pending,
            "isInPreparation": self.is_in_preparation,
            "isInDelivery": self.is_in_delivery,
            "isDelivered": self.is_delivered,
            "cancelReason": self.cancel_reason,
            "rating": self.rating,
            "reviewComment": self.review_comment,
            "reviewDate": isoformat(self.review_date),
            "reviewRequested": bool(self.review_requested),
            "statusHistory": [dict(entry) for entry in (self.status_history or [])],
            "version": self.version,
        }
