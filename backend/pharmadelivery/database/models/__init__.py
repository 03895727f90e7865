"""
Database models package initialization.

This module exports all database models for SQLAlchemy and Alembic auto-generation.
Models are imported here to ensure they are registered with the Base metadata
for proper migration generation and relationship resolution.
"""

from pharmadelivery.database.base import (
    Base,
    BaseModel,
    TimestampMixin,
    UUIDMixin,
    create_table_args,
)
from pharmadelivery.database.models.deliveryman import Deliveryman
from pharmadelivery.database.models.delivery_run import DeliveryRun
from pharmadelivery.database.models.order import Order

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "create_table_args",
    "Deliveryman",
    "DeliveryRun",
    "Order",
]
