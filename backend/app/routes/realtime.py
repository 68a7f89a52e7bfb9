"""
Keystone Backend — Realtime WebSocket Endpoint
==============================================

    WS /ws?token=<bearer token>

The socket authenticates once on connect (same verifier and development
fallback as HTTP), joins the caller's `user-{id}` room and then only listens:
server events arrive as {"event", "data"}; a client "ping" text frame is
answered with {"event": "pong"}.

Rejected handshakes close with 1008 (policy violation); a handshake that
fails for any other reason (database down) closes with 1011.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.dependencies import authenticate
from app.exceptions import AppError, UnauthorizedError
from app.lifecycle import AppResources
from app.models.user import User
from app.services.realtime import user_room
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


async def _authenticate_socket(resources: AppResources, token: Optional[str]) -> User:
    async with resources.database.session() as session:
        user = await authenticate(resources, UserService(session), token)
        await session.commit()
    return user


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    resources: AppResources = websocket.app.state.resources
    try:
        user = await _authenticate_socket(resources, token)
    except UnauthorizedError as e:
        logger.info("WebSocket rejected: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return
    except AppError as e:
        logger.error("WebSocket handshake failed: %s", e.message)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    hub = resources.realtime
    room = user_room(user.id)
    await websocket.accept()
    hub.join(room, websocket)
    logger.info("WebSocket connected for user %s", user.id)

    try:
        await websocket.send_json({"event": "connected", "data": {"userId": str(user.id)}})
        while True:
            text = await websocket.receive_text()
            if text.strip().lower() == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for user %s", user.id)
    finally:
        hub.leave_all(websocket)
