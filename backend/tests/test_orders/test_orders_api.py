"""
Tests for the order API endpoints.

The service layer is patched; these tests cover authentication, role checks,
error to status mapping, and per-role filtering of returned documents.
"""

import uuid
from typing import Any, Callable, Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from pharmadelivery.database.models.order import Order
from pharmadelivery.services.delivery_runs.correlator import LivePosition
from pharmadelivery.services.orders.enums import ActorRole, OrderStatus
from pharmadelivery.services.orders.repository import OrderNotFoundError
from pharmadelivery.services.orders.service import (
    NetworkUnavailableError,
    TransitionConflictError,
)
from pharmadelivery.services.orders.state_machine import (
    InvalidTransitionError,
    TransitionNotPermittedError,
)

ORDERS_URL = "/api/v1/orders"


@pytest.fixture
def service_mock() -> Generator[MagicMock, None, None]:
    """Patch OrderService in the router and yield the instance mock."""
    with patch("pharmadelivery.api.v1.orders.OrderService") as service_class:
        instance = service_class.return_value
        for method in (
            "create_order",
            "get_order",
            "get_order_model",
            "search_order_by_id",
            "apply_transition",
            "reactivate_order",
            "update_multiple_order_status",
            "get_delivery_timings",
        ):
            setattr(instance, method, AsyncMock())
        yield instance


# ============================================================================
# Authentication
# ============================================================================


class TestAuthentication:
    """Tests for bearer token handling."""

    async def test_missing_token(self, async_client: AsyncClient) -> None:
        response = await async_client.get(f"{ORDERS_URL}/{uuid.uuid4()}")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_garbage_token(self, async_client: AsyncClient) -> None:
        response = await async_client.get(
            f"{ORDERS_URL}/{uuid.uuid4()}",
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401

    async def test_unknown_role(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
    ) -> None:
        response = await async_client.get(
            f"{ORDERS_URL}/{uuid.uuid4()}",
            headers=auth_headers("pharmacist"),
        )

        assert response.status_code == 401


# ============================================================================
# Creation and Reads
# ============================================================================


class TestCreateAndRead:
    """Tests for creating and reading orders."""

    async def test_create_order(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        order_factory: Callable[..., Order],
    ) -> None:
        order = order_factory()
        service_mock.create_order.return_value = order.to_document()

        response = await async_client.post(
            ORDERS_URL,
            json={
                "customerName": "Maria Souza",
                "customerPhone": "11987654321",
                "address": "Rua das Flores, 120",
                "pharmacyUnitId": "unit-centro",
                "items": ["Dipirona 500mg", "  "],
                "priceNumber": "42.50",
                "location": {"lat": -23.55, "lng": -46.63},
            },
            headers=auth_headers("manager"),
        )

        assert response.status_code == 201
        assert response.json()["status"] == "Pendente"
        kwargs = service_mock.create_order.await_args.kwargs
        assert kwargs["items"] == ["Dipirona 500mg"]
        assert kwargs["location"] == {"lat": -23.55, "lng": -46.63}
        assert kwargs["actor"] == ActorRole.MANAGER

    async def test_create_order_forbidden_for_courier(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        response = await async_client.post(
            ORDERS_URL,
            json={
                "customerName": "Maria",
                "address": "Rua A, 1",
                "pharmacyUnitId": "unit-centro",
                "priceNumber": 10,
            },
            headers=auth_headers("courier"),
        )

        assert response.status_code == 403
        service_mock.create_order.assert_not_awaited()

    async def test_create_order_negative_price(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        response = await async_client.post(
            ORDERS_URL,
            json={
                "customerName": "Maria",
                "address": "Rua A, 1",
                "pharmacyUnitId": "unit-centro",
                "priceNumber": -3,
            },
            headers=auth_headers("admin"),
        )

        assert response.status_code == 422
        assert response.json()["details"][0]["loc"] == ["body", "priceNumber"]
        assert "requestId" in response.json()

    async def test_customer_view_of_order(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        order_factory: Callable[..., Order],
    ) -> None:
        order = order_factory(status=OrderStatus.IN_DELIVERY, delivery_man_id=uuid.uuid4())
        service_mock.get_order.return_value = order.to_document()

        response = await async_client.get(
            f"{ORDERS_URL}/{order.id}", headers=auth_headers("customer")
        )

        assert response.status_code == 200
        data = response.json()
        assert "deliveryMan" not in data
        assert "version" not in data
        assert data["statusMessage"] == "O seu pedido saiu para entrega."
        assert data["isInDelivery"] is True

    async def test_admin_view_of_order(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        order_factory: Callable[..., Order],
    ) -> None:
        order = order_factory()
        service_mock.get_order.return_value = order.to_document()

        response = await async_client.get(
            f"{ORDERS_URL}/{order.id}", headers=auth_headers("admin")
        )

        assert response.json() == order.to_document()

    async def test_order_not_found(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        service_mock.get_order.side_effect = OrderNotFoundError("Order not found")

        response = await async_client.get(
            f"{ORDERS_URL}/{uuid.uuid4()}", headers=auth_headers("admin")
        )

        assert response.status_code == 404

    async def test_search_unavailable(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        service_mock.search_order_by_id.side_effect = NetworkUnavailableError(
            "Order lookup timed out", retry_after=3
        )

        response = await async_client.get(
            f"{ORDERS_URL}/search/PED-1", headers=auth_headers("courier")
        )

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "3"

    async def test_timings(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        order_id = uuid.uuid4()
        service_mock.get_delivery_timings.return_value = {
            "orderId": str(order_id),
            "status": "Pendente",
            "timings": None,
        }

        response = await async_client.get(
            f"{ORDERS_URL}/{order_id}/timings", headers=auth_headers("manager")
        )

        assert response.status_code == 200
        assert response.json()["timings"] is None

    async def test_position_hides_courier_record_from_customer(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        order_id = uuid.uuid4()
        position = LivePosition(
            run_id="run-1",
            deliveryman_id="courier-1",
            checkpoint={"latitude": 2.0, "longitude": 2.0, "timestamp": 2},
            distance_so_far=157249.4,
        )

        with patch("pharmadelivery.api.v1.orders.DeliveryRunCorrelator") as correlator:
            correlator.return_value.locate = AsyncMock(return_value=position)
            response = await async_client.get(
                f"{ORDERS_URL}/{order_id}/position", headers=auth_headers("customer")
            )

        assert response.status_code == 200
        data = response.json()["position"]
        assert "deliverymanId" not in data
        assert data["position"]["latitude"] == 2.0
        assert data["positionKnown"] is True

    async def test_position_unknown(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        with patch("pharmadelivery.api.v1.orders.DeliveryRunCorrelator") as correlator:
            correlator.return_value.locate = AsyncMock(return_value=None)
            response = await async_client.get(
                f"{ORDERS_URL}/{uuid.uuid4()}/position", headers=auth_headers("admin")
            )

        assert response.json()["position"] is None


# ============================================================================
# Transitions
# ============================================================================


class TestTransitions:
    """Tests for transition endpoints and their error mapping."""

    async def test_courier_transition_passes_courier_record(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        order_factory: Callable[..., Order],
    ) -> None:
        courier_id = uuid.uuid4()
        order = order_factory(status=OrderStatus.IN_DELIVERY, delivery_man_id=courier_id)
        service_mock.apply_transition.return_value = order.to_document()

        response = await async_client.post(
            f"{ORDERS_URL}/{order.id}/transitions",
            json={"status": "IN_DELIVERY"},
            headers=auth_headers("courier", deliveryman_id=str(courier_id)),
        )

        assert response.status_code == 200
        assert "rating" not in response.json()
        args = service_mock.apply_transition.await_args
        assert args.args == (order.id, OrderStatus.IN_DELIVERY, ActorRole.COURIER)
        assert args.kwargs["deliveryman_id"] == courier_id

    async def test_unknown_status_rejected(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        response = await async_client.post(
            f"{ORDERS_URL}/{uuid.uuid4()}/transitions",
            json={"status": "Perdido"},
            headers=auth_headers("admin"),
        )

        assert response.status_code == 422
        detail = response.json()["details"][0]
        assert detail["loc"] == ["body", "status"]
        assert detail["type"] == "value_error"
        assert "ctx" not in detail

    @pytest.mark.parametrize(
        "error,expected_status",
        [
            (
                InvalidTransitionError(
                    "Invalid transition from Entregue to Cancelado",
                    OrderStatus.DELIVERED,
                    OrderStatus.CANCELLED,
                    allowed_transitions=[],
                ),
                400,
            ),
            (
                TransitionNotPermittedError(
                    "Role courier may not set status Pendente",
                    OrderStatus.IN_DELIVERY,
                    OrderStatus.PENDING,
                ),
                403,
            ),
            (TransitionConflictError("Order was modified concurrently"), 409),
            (OrderNotFoundError("Order not found"), 404),
        ],
    )
    async def test_error_mapping(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        error: Exception,
        expected_status: int,
    ) -> None:
        service_mock.apply_transition.side_effect = error

        response = await async_client.post(
            f"{ORDERS_URL}/{uuid.uuid4()}/transitions",
            json={"status": "Cancelado", "reason": "Cliente desistiu"},
            headers=auth_headers("admin"),
        )

        assert response.status_code == expected_status

    async def test_invalid_transition_lists_allowed(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        service_mock.apply_transition.side_effect = InvalidTransitionError(
            "Invalid transition from Cancelado to Entregue",
            OrderStatus.CANCELLED,
            OrderStatus.DELIVERED,
            allowed_transitions=["Em Preparação"],
        )

        response = await async_client.post(
            f"{ORDERS_URL}/{uuid.uuid4()}/transitions",
            json={"status": "Entregue"},
            headers=auth_headers("manager"),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["allowedTransitions"] == ["Em Preparação"]

    async def test_customer_cannot_transition(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
    ) -> None:
        response = await async_client.post(
            f"{ORDERS_URL}/{uuid.uuid4()}/transitions",
            json={"status": "Cancelado", "reason": "Mudei de ideia"},
            headers=auth_headers("customer"),
        )

        assert response.status_code == 403
        service_mock.apply_transition.assert_not_awaited()

    async def test_reactivate_without_body(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        order_factory: Callable[..., Order],
    ) -> None:
        order = order_factory(status=OrderStatus.IN_PREPARATION)
        service_mock.reactivate_order.return_value = order.to_document()

        response = await async_client.post(
            f"{ORDERS_URL}/{order.id}/reactivate", headers=auth_headers("admin")
        )

        assert response.status_code == 200
        service_mock.reactivate_order.assert_awaited_once_with(
            order.id, ActorRole.ADMIN, note=None
        )

    async def test_batch_transition(
        self,
        async_client: AsyncClient,
        auth_headers: Callable[..., dict[str, str]],
        service_mock: MagicMock,
        order_factory: Callable[..., Order],
    ) -> None:
        order = order_factory(status=OrderStatus.IN_DELIVERY)
        failed_id = str(uuid.uuid4())
        result: dict[str, Any] = {
            "updated": [order.to_document()],
            "failed": [
                {
                    "orderId": failed_id,
                    "error": "Invalid transition from Entregue to A caminho",
                    "code": "InvalidTransitionError",
                }
            ],
        }
        service_mock.update_multiple_order_status.return_value = result

        response = await async_client.post(
            f"{ORDERS_URL}/transitions/batch",
            json={"orderIds": [str(order.id), failed_id], "status": "A caminho"},
            headers=auth_headers("manager"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["updated"][0]["id"] == str(order.id)
        assert data["failed"][0]["orderId"] == failed_id
        assert data["failed"][0]["code"] == "InvalidTransitionError"
