"""
WebSocket router for the realtime change feed.

A client opens /realtime/{table}?token=... and receives every committed
insert, update and delete on that table whose row it is allowed to read.
Any other query parameter is an equality filter on the row, e.g.
/realtime/notifications?token=...&read=false
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional

from auth.dependencies import decode_access_token
from auth.principal import resolve_principal
from core.errors import Unauthenticated
from database.config import get_db
from services.realtime import RealtimeHub, Subscription, get_realtime_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["Realtime"])

_RESERVED_PARAMS = {"token"}


def _parse_filter(params) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    for key, value in params.items():
        if key in _RESERVED_PARAMS:
            continue
        lowered = value.lower()
        if lowered in ("true", "false"):
            filters[key] = lowered == "true"
        else:
            filters[key] = value
    return filters


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        change = await subscription.next()
        await websocket.send_json(change.to_dict())


async def _listen(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_text()
        if data == "ping":
            await websocket.send_text("pong")


@router.websocket("/{table}")
async def realtime_feed(
    websocket: WebSocket,
    table: str,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    token_data = decode_access_token(token) if token else None
    if token_data is None:
        await websocket.close(code=4001, reason="Authentication required")
        return
    try:
        principal = resolve_principal(db, token_data.user_id)
    except Unauthenticated:
        await websocket.close(code=4001, reason="Invalid token")
        return
    finally:
        db.close()

    try:
        subscription = hub.subscribe(
            principal, table, _parse_filter(websocket.query_params), loop=asyncio.get_running_loop(),
        )
    except KeyError:
        await websocket.close(code=4004, reason=f"Unknown table: {table}")
        return

    await websocket.accept()
    logger.info(f"Realtime: {principal.user_id} subscribed to {table}")

    tasks = {
        asyncio.create_task(_pump(websocket, subscription)),
        asyncio.create_task(_listen(websocket)),
    }
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"Realtime feed for {principal.user_id} on {table} failed: {error}")
    finally:
        subscription.close()
        logger.info(f"Realtime: {principal.user_id} left {table}")
