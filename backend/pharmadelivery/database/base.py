"""
SQLAlchemy declarative base and common model mixins.

This module provides the SQLAlchemy DeclarativeBase with async attribute
support plus the UUID primary key and timestamp mixins shared by the order,
delivery run and courier tables.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

from pharmadelivery.core.logging import get_logger

logger = get_logger(__name__)


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models with async support.

    Provides column-level serialization used by logging and debugging; the
    public document shapes are produced by each model's ``to_document``.
    """

    __abstract__ = True

    def to_dict(self, exclude: Optional[set[str]] = None) -> Dict[str, Any]:
        """
        Convert model columns to a JSON-friendly dictionary.

        Args:
            exclude: Set of column names to exclude from output

        Returns:
            Dictionary representation of the row
        """
        exclude = exclude or set()
        result: Dict[str, Any] = {}

        for column in self.__table__.columns:
            if column.name in exclude:
                continue
            value = getattr(self, column.key, None)
            if isinstance(value, datetime):
                result[column.name] = value.isoformat()
            elif isinstance(value, uuid.UUID):
                result[column.name] = str(value)
            else:
                result[column.name] = value

        return result

    def __repr__(self) -> str:
        pk_values = []
        for column in self.__table__.primary_key.columns:
            value = getattr(self, column.key, None)
            if value is not None:
                pk_values.append(f"{column.name}={value!r}")

        pk_str = ", ".join(pk_values) if pk_values else "no primary key"
        return f"<{self.__class__.__name__}({pk_str})>"


class TimestampMixin:
    """
    Mixin for automatic timestamp management.

    Adds created_at and updated_at columns with server-side defaults.
    Compare-and-swap writes set updated_at explicitly so the value matches
    the ledger entry they append.
    """

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            comment="Timestamp when record was created",
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
            comment="Timestamp when record was last updated",
        )


class UUIDMixin:
    """
    Mixin for UUID primary key.

    Uses PostgreSQL's native UUID type with client-side uuid4 generation.
    """

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            UUID(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
            comment="Unique identifier for the record",
        )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """
    Base model with UUID primary key and timestamps.

    Example:
        class Deliveryman(BaseModel):
            __tablename__ = "deliverymen"

            name: Mapped[str] = mapped_column(String(255))
    """

    __abstract__ = True


def create_table_args(
    *constraints: Any,
    comment: Optional[str] = None,
    **kwargs: Any,
) -> tuple:
    """
    Build a ``__table_args__`` tuple from constraints, indexes and options.

    Args:
        *constraints: Index and constraint objects for the table
        comment: Table comment for documentation
        **kwargs: Additional table keyword arguments

    Returns:
        Tuple suitable for __table_args__

    Example:
        __table_args__ = create_table_args(
            Index("ix_orders_status", "status"),
            comment="Pharmacy delivery orders",
        )
    """
    options: Dict[str, Any] = dict(kwargs)
    if comment:
        options["comment"] = comment
    return (*constraints, options)
