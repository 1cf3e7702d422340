"""Client-side message timeline.

Builds one ordered, append-only sequence from a one-shot history fetch and
the live broadcast stream. A live message is appended only when no entry
already matches it by persisted id or by client key, which keeps optimistic
local echoes and reconnect replays from showing up twice.
"""
import logging
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Called with (all items, items added, replaced or removed by this change)
ChangeListener = Callable[[List[dict], List[dict]], None]


def _same_message(a: dict, b: dict) -> bool:
    if a.get("id") and a.get("id") == b.get("id"):
        return True
    return bool(a.get("clientKey")) and a.get("clientKey") == b.get("clientKey")


def author_id(message: dict) -> Optional[str]:
    author = message.get("author")
    if isinstance(author, dict):
        return author.get("id")
    return author


class MessageTimeline:
    """Ordered, duplicate-free view of a group's messages."""

    def __init__(self) -> None:
        self._items: List[dict] = []
        self._listeners: List[ChangeListener] = []

    @property
    def items(self) -> List[dict]:
        return list(self._items)

    def ids(self) -> List[Optional[str]]:
        return [m.get("id") for m in self._items]

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, changed: List[dict]) -> None:
        if not changed:
            return
        snapshot = self.items
        for listener in self._listeners:
            listener(snapshot, changed)

    def _find(self, message: dict) -> int:
        for index, existing in enumerate(self._items):
            if _same_message(existing, message):
                return index
        return -1

    def _merge(self, message: dict) -> Optional[dict]:
        index = self._find(message)
        if index < 0:
            self._items.append(message)
            return message
        existing = self._items[index]
        # Server echo of an optimistic entry replaces it in place
        if existing.get("pending") and message.get("id"):
            self._items[index] = message
            return message
        return None

    def load_history(self, items: List[dict]) -> None:
        changed = [m for m in (self._merge(item) for item in items) if m is not None]
        self._notify(changed)

    def load_older(self, items: List[dict]) -> None:
        """Put an older history page in front of what is already shown."""
        older = [item for item in items if self._find(item) < 0]
        self._items[:0] = older
        self._notify(older)

    def apply_live(self, message: dict) -> bool:
        """Merge one broadcast message.

        Returns:
            True if the timeline changed.
        """
        merged = self._merge(message)
        if merged is None:
            logger.debug("[Timeline] Duplicate message ignored: %s", message.get("id"))
            return False
        self._notify([merged])
        return True

    def add_pending(self, client_key: str, author: str, body: dict, reply_to: Optional[str] = None) -> dict:
        """Append an optimistic local echo awaiting the server's copy."""
        entry = {
            "id": None,
            "clientKey": client_key,
            "author": {"id": author},
            "body": body,
            "replyTo": {"id": reply_to} if reply_to else None,
            "pending": True,
        }
        self._items.append(entry)
        self._notify([entry])
        return entry

    def discard_pending(self, client_key: str) -> None:
        """Drop an optimistic entry whose send failed."""
        kept, removed = [], []
        for m in self._items:
            if m.get("pending") and m.get("clientKey") == client_key:
                removed.append(m)
            else:
                kept.append(m)
        self._items = kept
        self._notify(removed)

    def update(self, message: dict) -> bool:
        """Replace an existing entry with a newer copy (reactions changed)."""
        index = self._find(message)
        if index < 0:
            return False
        self._items[index] = message
        self._notify([message])
        return True

    def apply_read(self, user_id: str, message_ids: List[str]) -> None:
        wanted = set(message_ids)
        for message in self._items:
            if message.get("id") in wanted:
                read_by = message.setdefault("readBy", [])
                if user_id not in read_by:
                    read_by.append(user_id)

    def unread_by(self, me_id: str, already: Iterable[str] = ()) -> List[str]:
        """Ids of persisted messages not authored by me_id and not yet swept."""
        already = set(already)
        return [
            m["id"] for m in self._items
            if m.get("id") and author_id(m) != me_id and m["id"] not in already
        ]
