"""
WebSocket stream of order snapshots.

Browsers cannot set headers on a WebSocket handshake, so the bearer token
travels in the ``token`` query parameter. The first frame is the full
current state; later frames follow every observed change.
"""

import asyncio
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from pharmadelivery.api.deps import actor_from_token, get_optional_redis
from pharmadelivery.core.logging import clear_context, get_logger, set_actor
from pharmadelivery.core.security import TokenError
from pharmadelivery.services.orders.repository import OrderNotFoundError
from pharmadelivery.services.realtime.bridge import OrderSubscription, RealtimeSyncBridge
from pharmadelivery.services.realtime.visibility import ViewRole

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


async def _forward_snapshots(websocket: WebSocket, updates: OrderSubscription) -> None:
    async for snapshot in updates:
        await websocket.send_json(snapshot.to_dict())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/orders/{order_id}/stream")
async def stream_order(
    websocket: WebSocket,
    order_id: UUID,
    token: Optional[str] = Query(default=None),
) -> None:
    """
    Push snapshots of one order until the client disconnects.

    Closes with a policy violation for an invalid token or an unknown order
    and with try-again-later while the change feed is unavailable.
    """
    try:
        actor = actor_from_token(token or "")
    except TokenError as e:
        logger.warning("Order stream rejected", order_id=str(order_id), reason=e.code)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    set_actor(actor.id, actor.role.value)
    view = ViewRole.from_actor(actor.role)

    redis = await get_optional_redis()
    if redis is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    await websocket.accept()
    bridge = RealtimeSyncBridge(redis)

    try:
        async with bridge.subscribe(order_id, view) as updates:
            forward = asyncio.create_task(_forward_snapshots(websocket, updates))
            listen = asyncio.create_task(_wait_for_disconnect(websocket))
            done, pending = await asyncio.wait(
                {forward, listen},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            error = forward.exception() if forward in done else None
            if error is not None and not isinstance(error, WebSocketDisconnect):
                raise error

            if forward in done and error is None:
                # order disappeared while subscribed
                await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
    except OrderNotFoundError:
        logger.info("Order stream for unknown order", order_id=str(order_id))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Order not found")
    finally:
        logger.info("Order stream finished", order_id=str(order_id), view=view.value)
        clear_context()
