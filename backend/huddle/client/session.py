"""Group chat client session.

``GroupChatClient`` holds one WebSocket to ``/ws`` and an httpx client for
the history endpoint (and, when configured, a media upload endpoint). It
keeps a ``MessageTimeline`` in sync with the live stream and drives the
typing debounce, typing indicator and read sweeps for one group.

Usage:
    async with GroupChatClient("http://localhost:8000", token, group_id) as chat:
        await chat.join()
        await chat.send_text("hello")
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

import httpx
import websockets

from huddle.config import RealtimeSettings

from .recorder import CaptureDevice, ComposeState, VoiceRecorder
from .timeline import MessageTimeline
from .typing_state import TypingIndicator, TypingNotifier

logger = logging.getLogger(__name__)

Uploader = Callable[[bytes, str], Awaitable[str]]

ATTACHMENT_FIELDS = {
    "image": "imageUrl",
    "video": "videoUrl",
    "audio": "audioUrl",
    "file": "fileUrl",
}

# Failures after which the server may still have stored the message
UNCERTAIN_FAILURES = frozenset({"timeout", "disconnected", "internal"})


class RequestFailed(Exception):
    """The server answered a request with ``ok: false`` or not at all."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


def _ws_url(base_url: str, token: str) -> str:
    if base_url.startswith("https://"):
        root = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        root = "ws://" + base_url[len("http://"):]
    else:
        root = base_url
    return f"{root.rstrip('/')}/ws?token={token}"


class GroupChatClient:
    """Live client for one group.

    Args:
        base_url: Server root, e.g. ``http://localhost:8000``.
        token: Access token; sent as the ``token`` query parameter on the
            WebSocket and as a bearer token over HTTP.
        group_id: Group this session follows.
        on_scroll: Called after the timeline grows (scroll-to-latest).
        uploader: ``uploader(data, filename) -> url``. Defaults to a POST of
            the file to ``upload_url``.
        upload_url: Media endpoint returning ``{"url": ...}``.
        request_timeout: Seconds to wait for an acknowledgment.
        realtime: Supplies the typing expiry and typing stop windows.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        group_id: str,
        on_scroll: Optional[Callable[[], None]] = None,
        uploader: Optional[Uploader] = None,
        upload_url: Optional[str] = None,
        request_timeout: float = 5.0,
        http: Optional[httpx.AsyncClient] = None,
        realtime: Optional[RealtimeSettings] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.group_id = group_id
        self.on_scroll = on_scroll
        self.upload_url = upload_url
        self.request_timeout = request_timeout
        self.uploader = uploader or self._http_upload

        self.user_id: Optional[str] = None
        self.online: List[str] = []
        self.error: Optional[str] = None
        self.next_cursor: Optional[str] = None

        self.compose = ComposeState()
        self.timeline = MessageTimeline()
        self.timeline.subscribe(self._on_timeline_change)
        realtime = realtime or RealtimeSettings()
        self.typing = TypingIndicator(expiry=realtime.typing_expiry_seconds)
        self.notifier = TypingNotifier(self._emit_typing, stop_delay=realtime.typing_stop_delay_seconds)

        self._http = http or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {token}"},
        )
        self._owns_http = http is None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._swept: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._connected = asyncio.Event()

    async def __aenter__(self) -> "GroupChatClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        self._ws = await websockets.connect(_ws_url(self.base_url, self.token))
        self._reader = asyncio.create_task(self._read_loop())
        await asyncio.wait_for(self._connected.wait(), self.request_timeout)
        logger.info(f"[Client] Connected as {self.user_id}")

    async def close(self) -> None:
        self.notifier.cancel()
        self.typing.close()
        for task in list(self._tasks):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RequestFailed("disconnected"))
        self._pending.clear()
        if self._owns_http:
            await self._http.aclose()

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("[Client] Ignoring non-JSON frame")
                    continue
                self._handle_frame(frame)
        except websockets.ConnectionClosed as e:
            logger.info(f"[Client] Connection closed: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(RequestFailed("disconnected"))

    def _handle_frame(self, frame: dict) -> None:
        kind = frame.get("type")

        if kind == "ack":
            future = self._pending.pop(frame.get("requestId"), None)
            if future is not None and not future.done():
                future.set_result(frame)
        elif kind == "connected":
            self.user_id = frame.get("userId")
            self._connected.set()
        elif frame.get("groupId") != self.group_id:
            return
        elif kind == "newMessage":
            self.timeline.apply_live(_strip_type(frame))
        elif kind == "messageUpdated":
            self.timeline.update(_strip_type(frame))
        elif kind == "readDelta":
            self.timeline.apply_read(frame["userId"], frame.get("messageIds", []))
        elif kind == "typingDelta":
            self.typing.apply(frame["userId"], bool(frame.get("typing")))
        elif kind == "presenceSnapshot":
            self.online = list(frame.get("onlineUserIds", []))
        elif kind != "reactionDelta":
            logger.debug(f"[Client] Unhandled frame type={kind!r}")

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _request(self, event: str, **payload: Any) -> dict:
        request_id = uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({"type": event, "requestId": request_id, **payload}))
            ack = await asyncio.wait_for(future, self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestFailed("timeout", f"No ack for {event}")
        except websockets.ConnectionClosed:
            raise RequestFailed("disconnected")
        finally:
            self._pending.pop(request_id, None)

        if not ack.get("ok"):
            error = ack.get("error") or {}
            raise RequestFailed(error.get("code", "internal"), error.get("message", ""))
        return ack

    async def _emit(self, event: str, **payload: Any) -> None:
        await self._ws.send(json.dumps({"type": event, **payload}))

    def _emit_typing(self, typing: bool) -> None:
        event = "typingStart" if typing else "typingStop"
        self._background(self._emit(event, groupId=self.group_id))

    def _background(self, coro) -> None:
        """Run a fire-and-forget emit; failures are logged and dropped."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.info(f"[Client] Background emit failed: {error!r}")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def join(self) -> None:
        """Join the group room and load the latest history page."""
        await self._request("join", groupId=self.group_id)
        page = await self.fetch_history()
        self.timeline.load_history(page["items"])

    async def leave(self) -> None:
        await self._emit("leave", groupId=self.group_id)

    async def fetch_history(self, cursor: Optional[str] = None, limit: Optional[int] = None) -> dict:
        params = {}
        if cursor:
            params["cursor"] = cursor
        if limit:
            params["limit"] = limit
        response = await self._http.get(f"/groups/{self.group_id}/messages", params=params)
        response.raise_for_status()
        page = response.json()
        self.next_cursor = page.get("nextCursor")
        return page

    async def load_older(self) -> bool:
        """Prepend the next older history page; False if there is none."""
        if not self.next_cursor:
            return False
        page = await self.fetch_history(cursor=self.next_cursor)
        self.timeline.load_older(page["items"])
        return True

    async def _send(self, body: dict, **fields: Any) -> Optional[dict]:
        # Reused until the server acknowledges this send
        client_key = self.compose.client_key or uuid4().hex
        self.compose.client_key = client_key
        reply_to = self.compose.reply_to
        self.timeline.add_pending(client_key, self.user_id, body, reply_to)
        try:
            ack = await self._request(
                "send",
                groupId=self.group_id,
                clientKey=client_key,
                replyTo=reply_to,
                **fields,
            )
        except RequestFailed as e:
            logger.warning(f"[Client] Send failed: {e}")
            self.timeline.discard_pending(client_key)
            if e.code not in UNCERTAIN_FAILURES:
                self.compose.client_key = None
            self.error = "Message not sent"
            return None

        message = ack["message"]
        self.timeline.apply_live(message)
        self.error = None
        self.compose.reply_to = None
        self.compose.client_key = None
        self.notifier.flush()
        return message

    async def send_text(self, text: Optional[str] = None) -> Optional[dict]:
        """Send the draft (or text). The draft is cleared only on success."""
        content = (text if text is not None else self.compose.draft).strip()
        if not content:
            return None
        message = await self._send({"kind": "text", "text": content}, text=content)
        if message is not None:
            self.compose.draft = ""
        return message

    async def send_attachment(
        self,
        data: bytes,
        filename: str,
        kind: str = "file",
        caption: Optional[str] = None,
    ) -> Optional[dict]:
        """Upload media, then send it. Upload failures keep the compose state."""
        field = ATTACHMENT_FIELDS.get(kind)
        if field is None:
            raise ValueError(f"Unknown attachment kind: {kind}")

        self.compose.pending_attachment = filename
        try:
            url = await self.uploader(data, filename)
        except Exception as e:
            logger.warning(f"[Client] Upload of {filename} failed: {e}")
            self.error = "Upload failed"
            return None

        fields = {field: url}
        if kind == "file":
            fields["fileName"] = filename
        if caption:
            fields["text"] = caption

        body = {"kind": kind, "url": url, "caption": caption}
        if kind == "file":
            body["name"] = filename
        message = await self._send(body, **fields)
        if message is not None:
            self.compose.pending_attachment = None
        return message

    async def send_voice(
        self,
        audio_url: str,
        reply_to: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> dict:
        """Sender callback for ``VoiceRecorder``; raises on failure."""
        fields = {"groupId": self.group_id, "audioUrl": audio_url, "clientKey": client_key or uuid4().hex}
        if reply_to:
            fields["replyTo"] = reply_to
        ack = await self._request("send", **fields)
        self.timeline.apply_live(ack["message"])
        return ack["message"]

    def voice_recorder(self, device_factory: Callable[[], CaptureDevice]) -> VoiceRecorder:
        """Recorder that uploads with this session's uploader and sends here."""
        return VoiceRecorder(device_factory, self.uploader, self.send_voice, self.compose)

    async def react(self, message_id: str, emoji: str) -> str:
        """Toggle a reaction; returns "added" or "removed"."""
        ack = await self._request("react", groupId=self.group_id, messageId=message_id, emoji=emoji)
        self.timeline.update(ack["message"])
        return ack["action"]

    async def mark_read(self, message_ids: List[str]) -> None:
        if message_ids:
            await self._emit("markRead", groupId=self.group_id, messageIds=message_ids)

    def on_input(self, draft: str) -> None:
        """Record a draft change and drive the typing debounce."""
        self.compose.draft = draft
        self.notifier.on_input()

    async def _http_upload(self, data: bytes, filename: str) -> str:
        if not self.upload_url:
            raise RuntimeError("No uploader configured")
        response = await self._http.post(self.upload_url, files={"file": (filename, data)})
        response.raise_for_status()
        return response.json()["url"]

    def _on_timeline_change(self, items: List[dict], changed: List[dict]) -> None:
        if self.on_scroll is not None:
            self.on_scroll()
        if self._ws is None:
            return
        unread = self.timeline.unread_by(self.user_id, self._swept)
        if unread:
            self._swept.update(unread)
            self._background(self.mark_read(unread))


def _strip_type(frame: dict) -> dict:
    return {k: v for k, v in frame.items() if k != "type"}
