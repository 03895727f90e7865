"""
Order Pydantic schemas for API request/response validation.

This module defines schemas for order creation, status transitions,
reactivation, batch transitions, and review submission. Request bodies
accept the camelCase keys used by the mobile apps as well as snake_case.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from pharmadelivery.services.orders.enums import OrderStatus


class CamelModel(BaseModel):
    """Base model accepting camelCase or snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class LocationRequest(CamelModel):
    """Geocoded delivery address."""

    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class OrderCreateRequest(CamelModel):
    """Request schema for creating an order."""

    customer_name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Customer name",
    )
    customer_phone: Optional[str] = Field(
        None,
        max_length=32,
        description="Customer phone number",
    )
    address: str = Field(
        ...,
        min_length=1,
        max_length=1000,
        description="Delivery address",
    )
    pharmacy_unit_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Pharmacy unit handling the order",
    )
    items: list[str] = Field(
        default_factory=list,
        max_length=200,
        description="Item descriptions in order",
    )
    price_number: Decimal = Field(
        ...,
        ge=Decimal("0.00"),
        max_digits=10,
        decimal_places=2,
        description="Order total in reais",
    )
    location: Optional[LocationRequest] = Field(
        None,
        description="Geocoded address, optional",
    )
    number: Optional[str] = Field(
        None,
        max_length=50,
        description="Order number, generated when omitted",
    )

    @field_validator("items")
    @classmethod
    def validate_items(cls, v: list[str]) -> list[str]:
        """Drop blank item lines."""
        return [item.strip() for item in v if item and item.strip()]


class OrderTransitionRequest(CamelModel):
    """Request schema for a status transition."""

    status: OrderStatus = Field(..., description="Target order status")
    reason: Optional[str] = Field(
        None,
        max_length=500,
        description="Reason for the transition, required to cancel",
    )
    note: Optional[str] = Field(
        None,
        max_length=500,
        description="Annotation stored in the status history",
    )

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v: Any) -> OrderStatus:
        """Accept stored values in any case and member names."""
        if isinstance(v, OrderStatus):
            return v
        return OrderStatus.from_string(str(v))


class OrderReactivateRequest(CamelModel):
    """Request schema for reactivating a cancelled order."""

    note: Optional[str] = Field(
        None,
        max_length=500,
        description="Annotation replacing the default reactivation note",
    )


class BatchTransitionRequest(OrderTransitionRequest):
    """Request schema for transitioning several orders at once."""

    order_ids: list[UUID] = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Orders to transition",
    )


class BatchTransitionFailure(CamelModel):
    """One order the batch could not transition."""

    order_id: str
    error: str
    code: str


class BatchTransitionResponse(CamelModel):
    """Result of a batch transition."""

    updated: list[dict[str, Any]]
    failed: list[BatchTransitionFailure]


class ReviewSubmitRequest(CamelModel):
    """Request schema for submitting a review."""

    rating: int = Field(..., description="Rating from 1 to 5")
    comment: Optional[str] = Field(
        None,
        description="Optional comment, at most 500 characters",
    )

    @model_validator(mode="before")
    @classmethod
    def accept_review_comment_key(cls, data: Any) -> Any:
        """The customer app sends the comment as ``reviewComment``."""
        if isinstance(data, dict) and "comment" not in data and "reviewComment" in data:
            data = {**data, "comment": data["reviewComment"]}
        return data


class ReviewStateResponse(CamelModel):
    """Review eligibility and current values."""

    order_id: str
    eligible: bool
    review_requested: bool
    rating: Optional[int] = None
    review_comment: Optional[str] = None
    review_date: Optional[str] = None


class TipKeyResponse(CamelModel):
    """Courier payout key disclosed for tips."""

    deliveryman_name: Optional[str] = None
    chave_pix: str
