"""Public order tracking and the realtime websocket feeds."""

import asyncio

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from libs.auth.dependencies import STAFF_ROLES, InvalidTokenError, decode_token
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.orders_service.exceptions import OrderNotFoundError
from services.orders_service.routers._helpers import get_realtime_notifier
from services.orders_service.schemas import OrderSummary
from services.orders_service.services.notifier import (
    Subscription,
    org_channel,
    track_channel,
)
from services.orders_service.services.tracking import get_order_by_token
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

router = APIRouter(tags=["tracking"])


@router.get("/track/{token}", response_model=OrderSummary)
async def track_order(token: str, db: AsyncSession = Depends(get_async_db)):
    """Customer-facing order status. The token in the link is the only credential."""
    return await get_order_by_token(db, token)


async def _relay(websocket: WebSocket, subscription: Subscription) -> None:
    """Forward notifications until the client goes away."""

    async def forward() -> None:
        async for message in subscription:
            await websocket.send_json(message)

    async def drain() -> None:
        # Clients never send anything meaningful; reading detects disconnects
        while True:
            await websocket.receive_text()

    tasks = {asyncio.create_task(forward()), asyncio.create_task(drain())}
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            raise exc


@router.websocket("/ws/owner")
async def owner_feed(
    websocket: WebSocket,
    token: str = Query(""),
    notifier=Depends(get_realtime_notifier),
):
    """Organization feed for the owner board; authenticated by ``?token=<jwt>``."""
    try:
        user = decode_token(token)
    except InvalidTokenError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if user.org_id is None or user.org_role not in STAFF_ROLES:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info("Owner feed opened for organization %s", user.org_id)
    async with notifier.subscribe(org_channel(user.org_id)) as subscription:
        await _relay(websocket, subscription)
    logger.info("Owner feed closed for organization %s", user.org_id)


@router.websocket("/ws/track/{token}")
async def tracking_feed(
    websocket: WebSocket,
    token: str,
    db: AsyncSession = Depends(get_async_db),
    notifier=Depends(get_realtime_notifier),
):
    """Public feed for one order's tracking page."""
    try:
        await get_order_by_token(db, token)
    except OrderNotFoundError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        # Don't hold a connection for the lifetime of the socket
        await db.close()

    await websocket.accept()
    async with notifier.subscribe(track_channel(token)) as subscription:
        await _relay(websocket, subscription)
