"""Chat router providing the WebSocket and history endpoints.

This module provides:
    - GET /groups/{group_id}/messages: Paginated message history
    - WebSocket /ws: Real-time group messaging

The WebSocket is authenticated during the handshake. The credential is
taken, in order, from the ``X-Auth-Token`` header, an
``Authorization: Bearer`` header, the ``token`` query parameter, or the
``token`` cookie. Connections without a valid credential are closed with
code 1008 before any event is read.

Protocol Flow:
    1. Client connects with a credential
       → Server sends: {type: "connected", userId}
    2. Client sends: {type: "join", requestId, groupId}
       → Server broadcasts: {type: "presenceSnapshot", groupId, onlineUserIds}
       → Server replies: {type: "ack", requestId, ok: true}
    3. Client sends: {type: "send", requestId, groupId, text, clientKey}
       → Server broadcasts: {type: "newMessage", ...enrichedMessage}
       → Server replies: {type: "ack", requestId, ok: true, message}
    4. On disconnect → presenceSnapshot for every group the socket joined
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from huddle.auth import extract_token
from huddle.errors import ChatError
from huddle.store.runner import run_bounded

from .messages import dump

logger = logging.getLogger(__name__)

router = APIRouter()


async def _authenticate(state, token: Optional[str]) -> str:
    return await run_bounded(
        state.authenticator.authenticate,
        token,
        timeout=state.config.realtime.persistence_timeout_seconds,
    )


@router.get("/groups/{group_id}/messages")
async def get_message_history(
    request: Request,
    group_id: str,
    cursor: Optional[str] = Query(None, description="Message id; return messages older than it"),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Number of messages to return"),
) -> JSONResponse:
    """Get paginated message history for a group.

    Items come oldest first in the same enriched shape as the live
    ``newMessage`` broadcast. Pass ``nextCursor`` back as ``cursor`` to load
    older pages; it is null when there is nothing older.

    Example:
        GET /groups/<id>/messages?limit=30
        GET /groups/<id>/messages?cursor=<oldest id>&limit=30
    """
    state = request.app.state
    auth = state.config.auth
    token = extract_token(
        auth_field=request.headers.get(auth.auth_header),
        headers=request.headers,
        query_params=request.query_params,
        cookies=request.cookies,
        query_param=auth.query_param,
        cookie_name=auth.cookie_name,
    )
    try:
        user_id = await _authenticate(state, token)
        page = await state.messages.history(user_id, group_id, cursor, limit)
    except ChatError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    return JSONResponse(dump(page))


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time group chat.

    One connection serves every group the user joins. Frames from this
    connection are handled strictly one at a time, in arrival order.
    """
    state = websocket.app.state
    auth = state.config.auth
    token = extract_token(
        auth_field=websocket.headers.get(auth.auth_header),
        headers=websocket.headers,
        query_params=websocket.query_params,
        cookies=websocket.cookies,
        query_param=auth.query_param,
        cookie_name=auth.cookie_name,
    )
    try:
        user_id = await _authenticate(state, token)
    except ChatError as e:
        logger.warning(f"[WS] Rejecting connection: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    manager = state.manager
    events = state.events
    await manager.connect(websocket, user_id)

    try:
        await websocket.send_json({"type": "connected", "userId": user_id})

        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                await websocket.send_json({"type": "error", "error": "Binary frames are not supported"})
                continue
            try:
                frame = json.loads(text)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON frame"})
                continue
            if not isinstance(frame, dict):
                await websocket.send_json({"type": "error", "error": "Frame must be an object"})
                continue

            logger.debug("[WS] User %s received: type=%s", user_id, frame.get("type", "?"))
            reply = await events.dispatch(websocket, user_id, frame)
            if reply is not None and not await manager.send_personal(websocket, reply):
                logger.info(f"[WS] Could not deliver ack to {user_id}; connection gone")
                break

    except WebSocketDisconnect:
        logger.info(f"[WS] User {user_id} disconnected")
    finally:
        await events.disconnect(websocket)
