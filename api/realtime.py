"""Realtime API: WebSocket rooms for live doubt updates.

Connect with ``/ws/doubts?token=<jwt>``.  Every message in either
direction is ``{"event": ..., "data": ...}``.

Client events:
- ``join_doubt``   ``{"doubt_id"}``           → ``joined_doubt`` or ``error``
- ``leave_doubt``  ``{"doubt_id"}``
- ``doubt_typing`` ``{"doubt_id", "typing"}`` → ``user_typing`` to the others in the room
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from errors.exceptions import DoubtServiceError
from models.principal import Principal, UserRole
from services import access_policy
from services.access_policy import Operation
from services.auth import authenticate_token
from services.container import Services
from services.realtime import (
    ADMINS_ROOM,
    EDUCATORS_ROOM,
    doubt_room,
    envelope,
    user_room,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Close codes in the application range mirroring HTTP 401 / 403.
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403


def _doubt_id(data: Any) -> str | None:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        value = data.get("doubt_id") or data.get("doubtId")
        return str(value) if value else None
    return None


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json(envelope("error", {"message": message}))


async def _join_doubt(
    services: Services, principal: Principal, websocket: WebSocket, doubt_id: str
) -> None:
    doubt = await services.store.get_doubt(doubt_id)
    if doubt is None:
        await _send_error(websocket, "Doubt not found")
        return
    linked = False
    if principal.role == UserRole.PARENT:
        linked = await services.store.is_parent_of(principal.id, doubt.student_id)
    if not access_policy.can_access(principal, doubt, Operation.READ, is_linked_parent=linked):
        await _send_error(websocket, "Access denied to this doubt")
        return
    services.hub.join(doubt_room(doubt_id), websocket)
    logger.info("User %s joined doubt room %s", principal.id, doubt_id)
    await websocket.send_json(envelope("joined_doubt", {"doubt_id": doubt_id}))


async def handle_client_event(
    services: Services, principal: Principal, websocket: WebSocket, message: Any
) -> None:
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        await _send_error(websocket, "Malformed message")
        return
    event, data = message["event"], message.get("data")
    doubt_id = _doubt_id(data)

    if event in ("join_doubt", "leave_doubt", "doubt_typing") and doubt_id is None:
        await _send_error(websocket, "doubt_id is required")
        return

    if event == "join_doubt":
        await _join_doubt(services, principal, websocket, doubt_id)
    elif event == "leave_doubt":
        services.hub.leave(doubt_room(doubt_id), websocket)
    elif event == "doubt_typing":
        room = doubt_room(doubt_id)
        if not services.hub.is_member(room, websocket):
            await _send_error(websocket, "Join the doubt before sending typing events")
            return
        typing = bool(data.get("typing")) if isinstance(data, dict) else False
        await services.hub.publish(
            room,
            "user_typing",
            {"user_id": principal.id, "user_name": principal.name, "typing": typing},
            exclude=websocket,
        )
    else:
        await _send_error(websocket, f"Unknown event '{event}'")


@router.websocket("/ws/doubts")
async def doubt_socket(websocket: WebSocket, token: str | None = Query(None)):
    services: Services = websocket.app.state.services
    try:
        principal = await authenticate_token(token, services.authenticator)
    except DoubtServiceError as exc:
        code = WS_UNAUTHORIZED if exc.status_code == 401 else WS_FORBIDDEN
        await websocket.close(code=code, reason=exc.message)
        return

    await websocket.accept()
    hub = services.hub
    hub.join(user_room(principal.id), websocket)
    if principal.role == UserRole.EDUCATOR:
        hub.join(EDUCATORS_ROOM, websocket)
    if principal.is_staff:
        hub.join(ADMINS_ROOM, websocket)
    logger.info("Realtime connection opened for %s (%s)", principal.id, principal.role.value)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await _send_error(websocket, "Messages must be JSON")
                continue
            await handle_client_event(services, principal, websocket, message)
    except WebSocketDisconnect:
        logger.info("Realtime connection closed for %s", principal.id)
    finally:
        hub.leave_all(websocket)
