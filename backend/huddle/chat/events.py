"""Event dispatch for the realtime chat protocol.

Each inbound frame is ``{"type": <event>, "requestId"?: str, ...payload}``.
``ChatEventHandler.dispatch`` routes it to one handler and is the error
boundary for that request: ChatErrors become ``{"ok": false, "error"}``
acknowledgments, anything unexpected is logged and reported as a generic
Internal error. Nothing raised by a handler ever escapes into the receive
loop or another connection's handling.

Events with acknowledgment: join, send, react.
Fire-and-forget events: leave, typingStart, typingStop, markRead.

Broadcasts:
    - newMessage: enriched message, to the whole room (sender included)
    - messageUpdated: enriched message after a reaction toggle
    - reactionDelta: {groupId, messageId, emoji, userId, action}
    - presenceSnapshot: {groupId, onlineUserIds}
    - typingDelta: {groupId, userId, typing}, to everyone but the sender
    - readDelta: {groupId, userId, messageIds}, to everyone but the sender
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from fastapi import WebSocket

from huddle.errors import BadRequest, ChatError, Internal

from .gate import MembershipGate
from .manager import ConnectionManager
from .messages import MessageService, dump, parse_request
from .schemas import GroupRequest

logger = logging.getLogger(__name__)

ACK_EVENTS = frozenset({"join", "send", "react"})

Handler = Callable[[WebSocket, str, dict], Awaitable[dict]]


class ChatEventHandler:
    """Routes protocol events for authenticated connections."""

    def __init__(
        self,
        manager: ConnectionManager,
        gate: MembershipGate,
        messages: MessageService,
    ) -> None:
        self.manager = manager
        self.gate = gate
        self.messages = messages
        self._handlers: Dict[str, Handler] = {
            "join": self.join,
            "leave": self.leave,
            "send": self.send,
            "react": self.react,
            "typingStart": self.typing_start,
            "typingStop": self.typing_stop,
            "markRead": self.mark_read,
        }

    async def dispatch(self, websocket: WebSocket, user_id: str, frame: dict) -> Optional[dict]:
        """Handle one frame.

        Returns:
            The acknowledgment to send back, or None for fire-and-forget
            events and frames without a requestId.
        """
        event = frame.get("type")
        request_id = frame.get("requestId")
        handler = self._handlers.get(event) if isinstance(event, str) else None

        if handler is None:
            logger.warning(f"[WS] Unknown event type={event!r} from user {user_id}")
            if request_id is None:
                return None
            return {
                "type": "ack",
                "requestId": request_id,
                "event": event,
                "ok": False,
                "error": BadRequest(f"Unknown event: {event}").to_dict(),
            }

        try:
            result = await handler(websocket, user_id, frame)
        except ChatError as e:
            logger.info(f"[WS] {event} by {user_id} rejected: {e.code} ({e.message})")
            result = {"ok": False, "error": e.to_dict()}
        except Exception:
            logger.exception(f"[WS] {event} by {user_id} failed unexpectedly")
            result = {"ok": False, "error": Internal().to_dict()}

        if event not in ACK_EVENTS or request_id is None:
            return None
        return {"type": "ack", "requestId": request_id, "event": event, **result}

    # -------------------------------------------------------------------------
    # Room membership
    # -------------------------------------------------------------------------

    async def join(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        request = parse_request(GroupRequest, frame)
        await self.gate.require_member(request.groupId, user_id)

        snapshot = self.manager.join_room(websocket, request.groupId)
        logger.info(
            f"[WS] User {user_id} joined group {request.groupId}; online={len(snapshot)}"
        )
        await self.manager.broadcast({
            "type": "presenceSnapshot",
            "groupId": request.groupId,
            "onlineUserIds": snapshot,
        }, request.groupId)
        return {"ok": True}

    async def leave(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        # Presence is only released on disconnect
        request = parse_request(GroupRequest, frame)
        self.manager.leave_room(websocket, request.groupId)
        logger.info(f"[WS] User {user_id} left room {request.groupId}")
        return {"ok": True}

    async def disconnect(self, websocket: WebSocket) -> None:
        """Release the connection's rooms and presence, then rebroadcast presence."""
        for group_id, snapshot in self.manager.disconnect(websocket):
            await self.manager.broadcast({
                "type": "presenceSnapshot",
                "groupId": group_id,
                "onlineUserIds": snapshot,
            }, group_id)

    # -------------------------------------------------------------------------
    # Messages and reactions
    # -------------------------------------------------------------------------

    async def send(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        view, created = await self.messages.send(user_id, frame)
        data = dump(view)

        if not created:
            logger.info(f"[WS] Duplicate send for clientKey={view.clientKey}, returning {view.id}")
            return {"ok": True, "message": data}

        logger.info(
            f"[WS] Broadcasting message {view.id} to {self.manager.get_room_size(view.groupId)} connections"
        )
        await self.manager.broadcast({"type": "newMessage", **data}, view.groupId)

        recipients = self.manager.room_user_ids(view.groupId) - {user_id}
        if recipients:
            try:
                await self.messages.mark_delivered(view.id, recipients)
            except Exception as e:
                logger.warning(f"[WS] Could not record delivery for {view.id}: {e}")

        return {"ok": True, "message": data}

    async def react(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        action, emoji, view = await self.messages.react(user_id, frame)
        data = dump(view)

        await self.manager.broadcast({"type": "messageUpdated", **data}, view.groupId)
        await self.manager.broadcast({
            "type": "reactionDelta",
            "groupId": view.groupId,
            "messageId": view.id,
            "emoji": emoji,
            "userId": user_id,
            "action": action,
        }, view.groupId)
        return {"ok": True, "action": action, "message": data}

    # -------------------------------------------------------------------------
    # Typing and read receipts
    # -------------------------------------------------------------------------

    async def _typing(self, websocket: WebSocket, user_id: str, frame: dict, typing: bool) -> dict:
        request = parse_request(GroupRequest, frame)
        await self.gate.require_member(request.groupId, user_id)
        await self.manager.broadcast_except(
            {"type": "typingDelta", "groupId": request.groupId, "userId": user_id, "typing": typing},
            request.groupId,
            exclude_websocket=websocket,
        )
        return {"ok": True}

    async def typing_start(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        return await self._typing(websocket, user_id, frame, True)

    async def typing_stop(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        return await self._typing(websocket, user_id, frame, False)

    async def mark_read(self, websocket: WebSocket, user_id: str, frame: dict) -> dict:
        group_id, updated = await self.messages.mark_read(user_id, frame)
        if updated:
            await self.manager.broadcast_except(
                {"type": "readDelta", "groupId": group_id, "userId": user_id, "messageIds": updated},
                group_id,
                exclude_websocket=websocket,
            )
        return {"ok": True}
