"""Message creation, reactions, read receipts and outbound enrichment.

Internal logic only ever works on identifiers. Expansion into display
projections (``UserProjection``) happens once, in ``enrich``, right before
a message leaves the server.
"""
import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from huddle.config import RealtimeSettings
from huddle.errors import BadRequest, NotFound
from huddle.ids import is_valid_id
from huddle.store.runner import run_bounded
from huddle.store.schemas import (
    AudioBody,
    FileBody,
    ImageBody,
    StoredMessage,
    TextBody,
    UserRecord,
    VideoBody,
)
from huddle.store.service import ChatStore

from .gate import MembershipGate
from .schemas import (
    HistoryPage,
    MarkReadRequest,
    MessageView,
    ReactionView,
    ReactRequest,
    ReplyPreview,
    SendRequest,
    UserProjection,
)

logger = logging.getLogger(__name__)


def parse_request(model, payload: dict):
    """Validate an inbound payload, mapping schema errors to BadRequest."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise BadRequest(f"Invalid payload: {e.error_count()} error(s)")


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def build_body(request: SendRequest, max_text_length: int = 5000):
    """Pick the body variant for a send request.

    Precedence is file > audio > video > image > text. When a media variant
    wins and text was also sent, the text becomes its caption.

    Raises:
        BadRequest: every content field is empty after trimming.
    """
    text = _clean(request.text)[:max_text_length] or None
    file_url = _clean(request.fileUrl)
    audio_url = _clean(request.audioUrl)
    video_url = _clean(request.videoUrl)
    image_url = _clean(request.imageUrl)

    if file_url:
        return FileBody(url=file_url, name=_clean(request.fileName) or None, caption=text)
    if audio_url:
        return AudioBody(url=audio_url, caption=text)
    if video_url:
        return VideoBody(url=video_url, caption=text)
    if image_url:
        return ImageBody(url=image_url, caption=text)
    if text:
        return TextBody(text=text)
    raise BadRequest("Message is empty")


def _projection(user_id: str, users: Dict[str, UserRecord]) -> UserProjection:
    user = users.get(user_id)
    if user is None:
        return UserProjection(id=user_id)
    return UserProjection(id=user.id, fullName=user.full_name, profileImage=user.profile_image)


class MessageService:
    """Send, react, mark-read and history operations for one store."""

    def __init__(
        self,
        store: ChatStore,
        gate: MembershipGate,
        settings: Optional[RealtimeSettings] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.settings = settings or RealtimeSettings()

    async def _call(self, fn, *args, **kwargs):
        return await run_bounded(
            fn, *args, timeout=self.settings.persistence_timeout_seconds, **kwargs
        )

    # -------------------------------------------------------------------------
    # Enrichment
    # -------------------------------------------------------------------------

    def enrich_sync(self, messages: List[StoredMessage]) -> List[MessageView]:
        """Expand author, reply and reaction user ids into projections."""
        reply_ids = [m.reply_to for m in messages if m.reply_to]
        replies = {r.id: r for r in self.store.get_messages(reply_ids)}

        user_ids = set()
        for m in messages:
            user_ids.add(m.author_id)
            user_ids.update(r.user_id for r in m.reactions)
        user_ids.update(r.author_id for r in replies.values())
        users = self.store.get_users(user_ids)

        views = []
        for m in messages:
            reply = replies.get(m.reply_to) if m.reply_to else None
            views.append(MessageView(
                id=m.id,
                groupId=m.group_id,
                author=_projection(m.author_id, users),
                body=m.body,
                replyTo=ReplyPreview(
                    id=reply.id,
                    author=_projection(reply.author_id, users),
                    body=reply.body,
                ) if reply else None,
                reactions=[
                    ReactionView(emoji=r.emoji, user=_projection(r.user_id, users), ts=r.created_at)
                    for r in m.reactions
                ],
                readBy=m.read_by,
                deliveredTo=m.delivered_to,
                clientKey=m.client_key,
                createdAt=m.created_at,
            ))
        return views

    async def enrich(self, message: StoredMessage) -> MessageView:
        views = await self._call(self.enrich_sync, [message])
        return views[0]

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def send(self, user_id: str, payload: dict) -> Tuple[MessageView, bool]:
        """Create (or dedup) a message authored by user_id.

        Returns:
            Tuple of (enriched message, created). ``created`` is False when
            the client key matched an existing message.
        """
        request = parse_request(SendRequest, payload)
        await self.gate.require_member(request.groupId, user_id)

        client_key = _clean(request.clientKey) or None
        if client_key and len(client_key) > self.settings.max_client_key_length:
            raise BadRequest("clientKey too long")

        body = build_body(request, self.settings.max_text_length)

        reply_to = _clean(request.replyTo) or None
        if reply_to and not is_valid_id(reply_to):
            logger.info(f"[Messages] Ignoring malformed replyTo={reply_to!r}")
            reply_to = None

        message, created = await self._call(
            self.store.create_message,
            request.groupId,
            user_id,
            body,
            reply_to=reply_to,
            client_key=client_key,
        )
        return await self.enrich(message), created

    async def react(self, user_id: str, payload: dict) -> Tuple[str, str, MessageView]:
        """Toggle user_id's reaction on a message.

        Returns:
            Tuple of (action, emoji, enriched message); action is "added"
            or "removed" and emoji is the trimmed emoji that was toggled.
        """
        request = parse_request(ReactRequest, payload)
        await self.gate.require_member(request.groupId, user_id)

        emoji = _clean(request.emoji)
        if not emoji or len(emoji) > self.settings.max_emoji_length:
            raise BadRequest("Invalid emoji")
        if not is_valid_id(request.messageId):
            raise BadRequest("Bad messageId")

        message = await self._call(self.store.get_message, request.messageId)
        if message is None or message.group_id != request.groupId:
            raise NotFound("Message not found")

        action, updated = await self._call(
            self.store.toggle_reaction, request.messageId, emoji, user_id
        )
        return action, emoji, await self.enrich(updated)

    async def mark_read(self, user_id: str, payload: dict) -> Tuple[str, List[str]]:
        """Add user_id to readBy of the listed messages.

        Returns:
            Tuple of (group_id, ids whose readBy set grew).
        """
        request = parse_request(MarkReadRequest, payload)
        await self.gate.require_member(request.groupId, user_id)

        ids = [mid for mid in request.messageIds if is_valid_id(mid)]
        if not ids:
            return request.groupId, []
        updated = await self._call(self.store.mark_read, request.groupId, user_id, ids)
        return request.groupId, updated

    async def mark_delivered(self, message_id: str, user_ids) -> List[str]:
        return await self._call(self.store.mark_delivered, message_id, user_ids)

    async def history(
        self,
        user_id: str,
        group_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> HistoryPage:
        """One page of past messages in the live-stream shape, oldest first."""
        await self.gate.require_member(group_id, user_id)
        if cursor is not None and not is_valid_id(cursor):
            raise BadRequest("Bad cursor")

        page_size = limit or self.settings.history_page_size
        page_size = max(1, min(page_size, self.settings.history_max_page_size))

        def _page():
            messages, next_cursor = self.store.list_messages(group_id, cursor, page_size)
            return self.enrich_sync(messages), next_cursor

        items, next_cursor = await self._call(_page)
        return HistoryPage(items=items, nextCursor=next_cursor)


def dump(model: BaseModel) -> dict:
    """JSON-ready dict of an outbound model."""
    return model.model_dump(mode="json")
