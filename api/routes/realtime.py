"""
Realtime change channel for the Checklist Sync API.

``/realtime/{table}?user_id=`` is a WebSocket that pushes one JSON
``{eventType, table, new, old}`` message per change to the owner's document.
The access token travels in the ``Authorization`` header, or in a ``token``
query parameter for clients that cannot set headers.

Rejected connections are accepted and then closed with an application code:
4001 (missing, invalid or revoked token), 4003 (another user's channel) or
4004 (unknown collection).
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, WebSocket

from api.core.realtime import broker, relay_changes
from api.core.security import authenticate_websocket
from api.models.database import COLLECTION_MODELS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["Realtime"])


async def reject(websocket: WebSocket, code: int, reason: str) -> None:
    # A close reason can only be sent on an accepted socket
    await websocket.accept()
    await websocket.close(code=code, reason=reason)


@router.websocket("/{table}")
async def subscribe(
    websocket: WebSocket,
    table: str,
    user_id: Annotated[UUID, Query()],
) -> None:
    if table not in COLLECTION_MODELS:
        await reject(websocket, 4004, f"Unknown collection '{table}'")
        return

    user = await authenticate_websocket(websocket)
    if user is None:
        await reject(websocket, 4001, "Invalid or missing token")
        return
    if user.id != user_id:
        await reject(websocket, 4003, "Not allowed to access another user's data")
        return

    queue = broker.subscribe(table, user_id)
    try:
        await websocket.accept()
        logger.info(f"Realtime listener connected to {table}")
        await relay_changes(websocket, queue)
    finally:
        broker.unsubscribe(table, user_id, queue)
        logger.info(f"Realtime listener left {table}")
