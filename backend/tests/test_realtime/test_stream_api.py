"""
Tests for the order snapshot WebSocket endpoint.
"""

import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Callable, Generator
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from pharmadelivery.main import app
from pharmadelivery.services.orders.repository import OrderNotFoundError


@pytest.fixture
def client() -> TestClient:
    """Synchronous client for WebSocket sessions."""
    return TestClient(app)


@pytest.fixture
def redis_available() -> Generator[AsyncMock, None, None]:
    with patch(
        "pharmadelivery.api.v1.realtime.get_optional_redis",
        AsyncMock(return_value=AsyncMock()),
    ) as redis:
        yield redis


def stream_url(order_id: uuid.UUID, token: str = "") -> str:
    return f"/api/v1/orders/{order_id}/stream?token={token}"


def token_for(auth_headers: Callable[..., dict[str, str]], role: str) -> str:
    return auth_headers(role)["Authorization"].removeprefix("Bearer ")


class FakeBridge:
    """Bridge whose subscription yields the given snapshots then ends."""

    snapshots: list = []
    error: Exception = None
    views: list = []

    def __init__(self, redis_client):
        self.redis = redis_client

    @asynccontextmanager
    async def subscribe(self, order_id, view):
        FakeBridge.views.append(view)
        if FakeBridge.error is not None:
            raise FakeBridge.error

        async def updates():
            for snapshot in FakeBridge.snapshots:
                yield snapshot

        yield updates()


@pytest.fixture
def fake_bridge() -> Generator[type, None, None]:
    FakeBridge.snapshots = []
    FakeBridge.error = None
    FakeBridge.views = []
    with patch("pharmadelivery.api.v1.realtime.RealtimeSyncBridge", FakeBridge):
        yield FakeBridge


class TestOrderStream:
    """Tests for /orders/{order_id}/stream."""

    def test_rejects_missing_token(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(stream_url(uuid.uuid4())):
                pass

        assert exc_info.value.code == 1008

    def test_try_again_without_redis(
        self,
        client: TestClient,
        auth_headers: Callable[..., dict[str, str]],
    ) -> None:
        token = token_for(auth_headers, "customer")

        with patch(
            "pharmadelivery.api.v1.realtime.get_optional_redis",
            AsyncMock(return_value=None),
        ):
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect(stream_url(uuid.uuid4(), token)):
                    pass

        assert exc_info.value.code == 1013

    def test_forwards_snapshots(
        self,
        client: TestClient,
        auth_headers: Callable[..., dict[str, str]],
        redis_available: AsyncMock,
        fake_bridge: type,
    ) -> None:
        order_id = uuid.uuid4()
        fake_bridge.snapshots = [
            SimpleNamespace(
                to_dict=lambda: {"type": "order_snapshot", "orderId": str(order_id)}
            )
        ]

        with client.websocket_connect(
            stream_url(order_id, token_for(auth_headers, "courier"))
        ) as websocket:
            first = websocket.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()

        assert first == {"type": "order_snapshot", "orderId": str(order_id)}
        assert exc_info.value.code == 1000
        assert [view.value for view in fake_bridge.views] == ["courier"]

    def test_unknown_order(
        self,
        client: TestClient,
        auth_headers: Callable[..., dict[str, str]],
        redis_available: AsyncMock,
        fake_bridge: type,
    ) -> None:
        fake_bridge.error = OrderNotFoundError("Order not found")

        with client.websocket_connect(
            stream_url(uuid.uuid4(), token_for(auth_headers, "admin"))
        ) as websocket:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()

        assert exc_info.value.code == 1008
