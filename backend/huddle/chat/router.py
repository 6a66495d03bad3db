"""Chat router providing the WebSocket endpoint and read-only HTTP queries.

This module provides:
    - GET /api/messages: History window of a room
    - GET /api/users/online: Online-user snapshot
    - GET /api/rooms: Known rooms in creation order
    - WebSocket /ws/chat: Real-time chat

The WebSocket protocol:
    1. Client connects -> Server assigns a connection id
       -> Server sends: {type: "connected", connectionId: "xxx"}
    2. Client sends: {type: "join", displayName, persistentIdentity, email?, avatar?, authToken?}
       -> Everyone else: {type: "user_joined", user}
       -> Everyone: {type: "users_online", users}
       -> Joiner: {type: "available_rooms", rooms}, then {type: "message_history", ...}
    3. Client sends: {type: "send_message", content, roomId?}
       -> Room: {type: "room_message", ...message}
    4. Client sends: {type: "send_private_message", content, recipientId? | recipientIdentity?}
       -> Sender and recipient: {type: "private_message", ...message}
    5. Client sends: {type: "mark_read", scopeId, messageIds}
       -> Senders / room: {type: "message_read", ...}
    6. Client sends: {type: "typing_start" | "typing_stop", roomId?}
       -> Rest of room: {type: "user_typing" | "user_stopped_typing", ...}
    7. Client sends: {type: "switch_room", roomName}
       -> Client: {type: "message_history", ...}
    8. Client sends: {type: "private_history", peerIdentity, limit?}
       -> Client: {type: "message_history", scopeId: "private:<peer>", ...}
    9. On disconnect -> Everyone: {type: "user_left", user}, {type: "users_online", users}

Every frame the server sends goes through the connection's outbox, so the
client sees frames in the order the core produced them.
"""
import asyncio
import contextlib
import logging
import uuid
from typing import Any, List, Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from huddle.auth.service import IdentityVerifier, apply_verified_identity

from .core import ChatCore
from .errors import AuthenticationError, NotFoundError, ValidationError
from .fanout import QueueOutbox, build_event
from .models import IdentityInfo, InboundEvent, OutboundEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    # Non-browser clients send no Origin header.
    if not origin:
        return True
    return "*" in allowed_origins or origin in allowed_origins


@router.get("/api/messages")
async def get_room_messages(
    request: Request,
    room: str = Query("general", description="Room name"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get the history window of a room, oldest first.

    Example:
        GET /api/messages?room=random&limit=20
    """
    core: ChatCore = request.app.state.core
    messages = core.history_window(room, limit)
    return JSONResponse([msg.model_dump(mode="json") for msg in messages])


@router.get("/api/users/online")
async def get_online_users(request: Request) -> JSONResponse:
    """Get the current online-user snapshot."""
    core: ChatCore = request.app.state.core
    return JSONResponse([record.model_dump(mode="json") for record in core.online_users()])


@router.get("/api/rooms")
async def get_rooms(request: Request) -> JSONResponse:
    """Get known room names in creation order."""
    core: ChatCore = request.app.state.core
    return JSONResponse(core.list_rooms())


async def _resolve_identity(
    verifier: Optional[IdentityVerifier], data: dict, connection_id: str
) -> IdentityInfo:
    identity = IdentityInfo(
        displayName=_optional_str(data, "displayName"),
        persistentIdentity=_optional_str(data, "persistentIdentity"),
        email=_optional_str(data, "email"),
        avatar=_optional_str(data, "avatar"),
    )
    token = _optional_str(data, "authToken")
    if not token:
        return identity
    if verifier is None:
        logger.debug(f"[Auth] Token from {connection_id} ignored, no identity provider configured")
        return identity

    try:
        verified = await verifier.verify(token)
    except AuthenticationError as e:
        # Permissive policy: keep the connection, just unauthenticated.
        logger.warning(f"[Auth] Verification failed for {connection_id}, continuing unauthenticated: {e}")
        return identity

    logger.info(f"[Auth] Authenticated {connection_id} as {verified.subject}")
    return apply_verified_identity(identity, verified)


async def _dispatch(
    core: ChatCore,
    verifier: Optional[IdentityVerifier],
    connection_id: str,
    data: Any,
) -> None:
    if not isinstance(data, dict):
        raise ValidationError("event must be a JSON object")
    event_type = data.get("type")

    # --- JOIN: register presence, land in the default room ---
    if event_type == InboundEvent.JOIN:
        identity = await _resolve_identity(verifier, data, connection_id)
        core.join(connection_id, identity)
        return

    # --- Room message ---
    if event_type == InboundEvent.SEND_MESSAGE:
        core.send_room_message(connection_id, data.get("content"), _optional_str(data, "roomId"))
        return

    # --- Private message ---
    if event_type == InboundEvent.SEND_PRIVATE_MESSAGE:
        core.send_private_message(
            connection_id,
            data.get("content"),
            recipient_id=_optional_str(data, "recipientId"),
            recipient_identity=_optional_str(data, "recipientIdentity"),
        )
        return

    # --- Read receipts ---
    if event_type == InboundEvent.MARK_READ:
        message_ids = data.get("messageIds")
        if not isinstance(message_ids, list):
            raise ValidationError("messageIds must be a list")
        core.mark_read(connection_id, data.get("scopeId"), message_ids)
        return

    # --- Typing indicators ---
    if event_type == InboundEvent.TYPING_START:
        core.typing_start(connection_id, _optional_str(data, "roomId"))
        return
    if event_type == InboundEvent.TYPING_STOP:
        core.typing_stop(connection_id, _optional_str(data, "roomId"))
        return

    # --- Room switch ---
    if event_type == InboundEvent.SWITCH_ROOM:
        core.switch_room(connection_id, data.get("roomName"))
        return

    # --- Private thread history ---
    if event_type == InboundEvent.PRIVATE_HISTORY:
        core.private_history(connection_id, data.get("peerIdentity"), data.get("limit"))
        return

    raise ValidationError(f"Unknown event type: {event_type}")


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time chat.

    Inbound frames are handled one at a time, each to completion, before
    the next is read. Outbound frames are written by a separate writer task
    draining this connection's outbox, so a slow peer never holds up a
    handler.
    """
    core: ChatCore = websocket.app.state.core
    verifier: Optional[IdentityVerifier] = websocket.app.state.verifier
    outbox_size = websocket.app.state.config.chat.outbox_size

    # CORSMiddleware only covers HTTP; browsers send Origin on the upgrade too.
    origin = websocket.headers.get("origin")
    if not _origin_allowed(origin, websocket.app.state.config.server.allowed_origins):
        logger.warning(f"[WS] Rejected connection from origin {origin}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    outbox = QueueOutbox(maxsize=outbox_size)
    outbox.push(build_event(OutboundEvent.CONNECTED, connectionId=connection_id))
    core.attach(connection_id, outbox)
    writer = asyncio.create_task(outbox.pump(websocket.send_json))
    logger.info(f"[WS] Connection accepted: {connection_id}")

    try:
        while True:
            data = await websocket.receive_json()
            logger.debug("[WS] %s received: type=%s", connection_id, data.get("type", "?") if isinstance(data, dict) else "?")
            try:
                await _dispatch(core, verifier, connection_id, data)
            except ValidationError as e:
                logger.info(f"[WS] Dropped invalid event from {connection_id}: {e}")
                outbox.push(build_event(OutboundEvent.ERROR, error=str(e)))
            except NotFoundError as e:
                logger.info(f"[WS] No-op event from {connection_id}: {e}")
    except WebSocketDisconnect:
        logger.info(f"[WS] Disconnected: {connection_id}")
    finally:
        core.disconnect(connection_id)
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
