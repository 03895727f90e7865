"""
Pytest configuration and shared test fixtures.

This module provides the test environment, model factories for orders,
couriers and delivery runs, mocked database sessions, bearer tokens for each
actor role, and an async HTTP client whose database and Redis dependencies
are overridden.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Optional
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.api.deps import get_optional_redis
from pharmadelivery.core.security import create_access_token
from pharmadelivery.database.connection import get_db
from pharmadelivery.database.models.delivery_run import DeliveryRun
from pharmadelivery.database.models.deliveryman import Deliveryman
from pharmadelivery.database.models.order import Order
from pharmadelivery.services.delivery_runs.enums import DeliveryRunStatus, DutyStatus
from pharmadelivery.services.orders.enums import OrderStatus

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Model Factories
# ============================================================================


@pytest.fixture
def base_time() -> datetime:
    """Fixed reference instant for ledger timestamps."""
    return BASE_TIME


@pytest.fixture
def order_factory() -> Callable[..., Order]:
    """
    Build transient Order rows.

    Returns:
        Callable accepting column overrides

    Example:
        def test_delivered(order_factory):
            order = order_factory(status=OrderStatus.DELIVERED)
    """

    def _make(
        status: OrderStatus = OrderStatus.PENDING,
        history: Optional[list[dict[str, Any]]] = None,
        **overrides: Any,
    ) -> Order:
        created_at = overrides.pop("created_at", BASE_TIME)
        if history is None:
            history = [
                {"status": OrderStatus.PENDING.value, "timestamp": created_at.isoformat()}
            ]
        fields: dict[str, Any] = {
            "id": uuid.uuid4(),
            "number": "PED-20240501120000-ABC123",
            "status": status,
            "created_at": created_at,
            "updated_at": created_at,
            "last_status_update": created_at,
            "price_number": Decimal("42.50"),
            "items": ["Dipirona 500mg", "Soro fisiológico"],
            "address": "Rua das Flores, 120",
            "customer_name": "Maria Souza",
            "customer_phone": "(11) 98765-4321",
            "pharmacy_unit_id": "unit-centro",
            "delivery_man_id": None,
            "delivery_man_name": None,
            "license_plate": None,
            "location": {"lat": -23.55, "lng": -46.63},
            "cancel_reason": None,
            "rating": None,
            "review_comment": None,
            "review_date": None,
            "review_requested": False,
            "status_history": history,
            "version": 1,
        }
        fields.update(overrides)
        return Order(**fields)

    return _make


@pytest.fixture
def courier_factory() -> Callable[..., Deliveryman]:
    """Build transient Deliveryman rows."""

    def _make(**overrides: Any) -> Deliveryman:
        fields: dict[str, Any] = {
            "id": uuid.uuid4(),
            "name": "João Carlos da Silva",
            "pharmacy_unit_id": "unit-centro",
            "status": DutyStatus.AWAITING_ORDER,
            "order_id": None,
            "license_plate": "ABC1D23",
            "chave_pix": "joao@pix.com.br",
            "created_at": BASE_TIME,
            "updated_at": BASE_TIME,
        }
        fields.update(overrides)
        return Deliveryman(**fields)

    return _make


@pytest.fixture
def run_factory() -> Callable[..., DeliveryRun]:
    """Build transient DeliveryRun rows."""

    def _make(
        order_ids: Optional[list[Any]] = None,
        checkpoints: Optional[list[dict[str, Any]]] = None,
        **overrides: Any,
    ) -> DeliveryRun:
        fields: dict[str, Any] = {
            "id": uuid.uuid4(),
            "deliveryman_id": uuid.uuid4(),
            "pharmacy_unit_id": "unit-centro",
            "motorcycle_id": "moto-7",
            "status": DeliveryRunStatus.ACTIVE,
            "order_ids": [str(value) for value in (order_ids or [])],
            "checkpoints": list(checkpoints or []),
            "total_distance": 0.0,
            "start_time": BASE_TIME,
            "end_time": None,
            "created_at": BASE_TIME,
            "updated_at": BASE_TIME + timedelta(minutes=1),
        }
        fields.update(overrides)
        return DeliveryRun(**fields)

    return _make


# ============================================================================
# Persistence and Authentication
# ============================================================================


@pytest.fixture
def mock_session() -> AsyncMock:
    """
    Create mock async database session.

    Returns:
        AsyncMock: Mock database session
    """
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """
    Build Authorization headers for an actor role.

    Example:
        headers = auth_headers("courier", deliveryman_id=str(courier_id))
    """

    def _make(role: str, subject: Optional[str] = None, **claims: Any) -> dict[str, str]:
        token = create_access_token(subject or f"{role}-1", role, **claims)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
async def async_client(mock_session: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    """
    Asynchronous test client with database and Redis overridden.

    The database dependency yields ``mock_session`` and Redis is reported
    unavailable, so services are exercised without external systems.

    Yields:
        AsyncClient: Client bound to the FastAPI app
    """
    from pharmadelivery.main import app

    async def _override_db() -> AsyncGenerator[AsyncSession, None]:
        yield mock_session

    async def _override_redis() -> None:
        return None

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_optional_redis] = _override_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_rate_limits() -> None:
    """Clear slowapi counters so rate-limited endpoints start fresh."""
    from pharmadelivery.core.rate_limit import limiter

    limiter.reset()
