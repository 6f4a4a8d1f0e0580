"""Realtime dashboard WebSocket endpoint.

Usage:
    ws://host/api/v1/ws/realtime?token=<jwt>

The token may also be sent as ``Authorization: Bearer <jwt>``. Sockets
without a valid token are closed before being accepted.
"""
from __future__ import annotations

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from campaign_dialer.core.exceptions import AuthenticationError
from campaign_dialer.core.security import bearer_token
from campaign_dialer.log import get_logger

log = get_logger(__name__)

router = APIRouter()


@router.websocket("/realtime")
async def realtime_socket(websocket: WebSocket, token: str | None = Query(None)) -> None:
    hub = websocket.app.state.services.fanout

    try:
        identity = hub.authenticate(token or bearer_token(websocket.headers.get("authorization")))
    except AuthenticationError as e:
        log.warning("Realtime handshake rejected", reason=e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    connection = await hub.connect(websocket, identity)
    try:
        while True:
            text = await websocket.receive_text()
            await hub.handle_text(connection.id, text)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(connection.id)
