"""DuckDB-backed storage for groups, users, messages and message state.

The service owns a single DuckDB connection. DuckDB connections are not
thread-safe, and the realtime layer calls into the store from worker threads
(``asyncio.to_thread``), so every public method holds ``self._lock`` for its
whole duration. Methods that must be atomic against concurrent callers
(``create_message``, ``toggle_reaction``, ``mark_read``) additionally run
inside one transaction.

Database Schema:
    users:             id, email, full_name, profile_image
    groups:            id, name, last_message_id, created_at
    group_members:     group_id, user_id, is_admin
    messages:          id, seq, group_id, author_id, kind, text, url,
                       file_name, reply_to, client_key, created_at
    message_reactions: message_id, emoji, user_id, created_at
    message_reads:     message_id, user_id
    message_deliveries: message_id, user_id

Usage:
    store = ChatStore(":memory:")
    message, created = store.create_message(group_id, author_id, body, client_key="k1")
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import duckdb

from huddle.ids import new_id
from .schemas import (
    GroupRecord,
    StoredMessage,
    StoredReaction,
    UserRecord,
    body_from_columns,
    body_to_columns,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id            VARCHAR PRIMARY KEY,
        email         VARCHAR,
        full_name     VARCHAR NOT NULL DEFAULT '',
        profile_image VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        id              VARCHAR PRIMARY KEY,
        name            VARCHAR NOT NULL,
        last_message_id VARCHAR,
        created_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id VARCHAR NOT NULL,
        user_id  VARCHAR NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS message_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id         VARCHAR PRIMARY KEY,
        seq        BIGINT NOT NULL DEFAULT nextval('message_seq'),
        group_id   VARCHAR NOT NULL,
        author_id  VARCHAR NOT NULL,
        kind       VARCHAR NOT NULL,
        text       VARCHAR,
        url        VARCHAR,
        file_name  VARCHAR,
        reply_to   VARCHAR,
        client_key VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reactions (
        message_id VARCHAR NOT NULL,
        emoji      VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_deliveries (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_group ON group_members(group_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_group ON messages(group_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_client_key ON messages(group_id, client_key)",
    "CREATE INDEX IF NOT EXISTS idx_reactions_message ON message_reactions(message_id)",
    "CREATE INDEX IF NOT EXISTS idx_reads_message ON message_reads(message_id)",
    "CREATE INDEX IF NOT EXISTS idx_deliveries_message ON message_deliveries(message_id)",
]

_MESSAGE_COLUMNS = (
    "id, group_id, author_id, kind, text, url, file_name, reply_to, client_key, created_at"
)


def _utcnow() -> datetime:
    # Stored as naive UTC in TIMESTAMP columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class ChatStore:
    """Chat persistence in one DuckDB database.

    Attributes:
        _default_db_path: Path used when none is given.
    """

    _default_db_path: str = "huddle.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._lock = threading.RLock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        for statement in _SCHEMA:
            self._conn.execute(statement)
        logger.info("[Store] Initialized with db=%s", self._db_path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self):
        """Hold the store lock and run the body in one DuckDB transaction."""
        with self._lock:
            self._conn.execute("BEGIN TRANSACTION")
            try:
                yield self._conn
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def create_user(
        self,
        full_name: str,
        email: Optional[str] = None,
        profile_image: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> UserRecord:
        user = UserRecord(
            id=user_id or new_id(),
            email=email.lower().strip() if email else None,
            full_name=full_name,
            profile_image=profile_image,
        )
        with self._lock:
            self._conn.execute(
                "INSERT INTO users (id, email, full_name, profile_image) VALUES (?, ?, ?, ?)",
                [user.id, user.email, user.full_name, user.profile_image],
            )
        return user

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM users WHERE email = ? LIMIT 1",
                [email.lower().strip()],
            ).fetchone()
        return row[0] if row else None

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, UserRecord]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, email, full_name, profile_image FROM users "
                f"WHERE id IN ({_placeholders(ids)})",
                ids,
            ).fetchall()
        return {
            r[0]: UserRecord(id=r[0], email=r[1], full_name=r[2], profile_image=r[3])
            for r in rows
        }

    # -----------------------------------------------------------------------
    # Groups
    # -----------------------------------------------------------------------

    def create_group(
        self,
        name: str,
        member_ids: Iterable[str] = (),
        admin_ids: Iterable[str] = (),
        group_id: Optional[str] = None,
    ) -> GroupRecord:
        gid = group_id or new_id()
        admins = set(admin_ids)
        members = set(member_ids) | admins
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO groups (id, name, last_message_id, created_at) VALUES (?, ?, NULL, ?)",
                [gid, name, _utcnow()],
            )
            for uid in sorted(members):
                conn.execute(
                    "INSERT INTO group_members (group_id, user_id, is_admin) VALUES (?, ?, ?)",
                    [gid, uid, uid in admins],
                )
        return GroupRecord(id=gid, name=name, member_ids=members, admin_ids=admins)

    def add_member(self, group_id: str, user_id: str, admin: bool = False) -> None:
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
                [group_id, user_id],
            ).fetchone()
            if exists is None:
                conn.execute(
                    "INSERT INTO group_members (group_id, user_id, is_admin) VALUES (?, ?, ?)",
                    [group_id, user_id, admin],
                )

    def remove_member(self, group_id: str, user_id: str) -> bool:
        with self._lock:
            removed = self._conn.execute(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ? RETURNING user_id",
                [group_id, user_id],
            ).fetchall()
        return bool(removed)

    def get_group(self, group_id: str) -> Optional[GroupRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, name, last_message_id FROM groups WHERE id = ?", [group_id]
            ).fetchone()
            if row is None:
                return None
            members = self._conn.execute(
                "SELECT user_id, is_admin FROM group_members WHERE group_id = ?", [group_id]
            ).fetchall()
        return GroupRecord(
            id=row[0],
            name=row[1],
            last_message_id=row[2],
            member_ids={m[0] for m in members},
            admin_ids={m[0] for m in members if m[1]},
        )

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def create_message(
        self,
        group_id: str,
        author_id: str,
        body,
        reply_to: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> Tuple[StoredMessage, bool]:
        """Create a message unless (group_id, client_key) already exists.

        The lookup, the reply resolution, the insert and the group's
        last-message update run in one transaction under the store lock.

        Returns:
            Tuple of (message, created). ``created`` is False when an
            existing message with the same client key was returned.
        """
        with self._transaction() as conn:
            if client_key:
                existing = conn.execute(
                    "SELECT id FROM messages WHERE group_id = ? AND client_key = ?",
                    [group_id, client_key],
                ).fetchone()
                if existing is not None:
                    logger.info(
                        "[Store] Dedup hit for client_key=%s in group %s", client_key, group_id
                    )
                    return self._load_messages([existing[0]])[0], False

            if reply_to:
                target = conn.execute(
                    "SELECT group_id FROM messages WHERE id = ?", [reply_to]
                ).fetchone()
                if target is None or target[0] != group_id:
                    logger.info(
                        "[Store] Dropping reply_to=%s (not in group %s)", reply_to, group_id
                    )
                    reply_to = None

            message_id = new_id()
            kind, text, url, file_name = body_to_columns(body)
            conn.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    message_id, group_id, author_id, kind, text, url, file_name,
                    reply_to, client_key or None, _utcnow(),
                ],
            )
            conn.execute(
                "INSERT INTO message_reads (message_id, user_id) VALUES (?, ?)",
                [message_id, author_id],
            )
            conn.execute(
                "UPDATE groups SET last_message_id = ? WHERE id = ?",
                [message_id, group_id],
            )
            return self._load_messages([message_id])[0], True

    def get_message(self, message_id: str) -> Optional[StoredMessage]:
        with self._lock:
            found = self._load_messages([message_id])
        return found[0] if found else None

    def get_messages(self, message_ids: Iterable[str]) -> List[StoredMessage]:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        with self._lock:
            return self._load_messages(ids)

    def list_messages(
        self, group_id: str, cursor: Optional[str] = None, limit: int = 30
    ) -> Tuple[List[StoredMessage], Optional[str]]:
        """Return one page of a group's history, oldest first.

        Args:
            group_id: Group to read.
            cursor: Message id; only messages older than it are returned.
            limit: Page size.

        Returns:
            Tuple of (messages, next_cursor). ``next_cursor`` is the id of the
            oldest returned message when older messages remain, else None.
        """
        with self._lock:
            params: List = [group_id]
            where = "group_id = ?"
            if cursor:
                where += " AND seq < (SELECT seq FROM messages WHERE id = ?)"
                params.append(cursor)
            rows = self._conn.execute(
                f"SELECT id FROM messages WHERE {where} ORDER BY seq DESC LIMIT {int(limit) + 1}",
                params,
            ).fetchall()
            has_more = len(rows) > limit
            ids = [r[0] for r in rows[:limit]]
            ids.reverse()
            messages = self._load_messages(ids)
        next_cursor = messages[0].id if (messages and has_more) else None
        return messages, next_cursor

    # -----------------------------------------------------------------------
    # Reactions, reads, deliveries
    # -----------------------------------------------------------------------

    def toggle_reaction(
        self, message_id: str, emoji: str, user_id: str
    ) -> Tuple[str, StoredMessage]:
        """Add the (message, emoji, user) reaction, or remove it if present.

        Returns:
            Tuple of (action, message) where action is "added" or "removed".
        """
        with self._transaction() as conn:
            removed = conn.execute(
                "DELETE FROM message_reactions "
                "WHERE message_id = ? AND emoji = ? AND user_id = ? RETURNING user_id",
                [message_id, emoji, user_id],
            ).fetchall()
            if removed:
                action = "removed"
            else:
                conn.execute(
                    "INSERT INTO message_reactions (message_id, emoji, user_id, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    [message_id, emoji, user_id, _utcnow()],
                )
                action = "added"
            return action, self._load_messages([message_id])[0]

    def mark_read(
        self, group_id: str, user_id: str, message_ids: Iterable[str]
    ) -> List[str]:
        """Add user_id to readBy of each listed message in the group.

        Messages outside the group and messages already read by the user are
        left untouched.

        Returns:
            Ids of messages whose readBy set actually grew.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                INSERT INTO message_reads (message_id, user_id)
                SELECT m.id, ? FROM messages m
                WHERE m.group_id = ?
                  AND m.id IN ({_placeholders(ids)})
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                RETURNING message_id
                """,
                [user_id, group_id, *ids, user_id],
            ).fetchall()
        return [r[0] for r in rows]

    def mark_delivered(self, message_id: str, user_ids: Iterable[str]) -> List[str]:
        """Add each user to the message's deliveredTo set (set union)."""
        added: List[str] = []
        with self._transaction() as conn:
            for uid in sorted(set(user_ids)):
                row = conn.execute(
                    "SELECT 1 FROM message_deliveries WHERE message_id = ? AND user_id = ?",
                    [message_id, uid],
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO message_deliveries (message_id, user_id) VALUES (?, ?)",
                        [message_id, uid],
                    )
                    added.append(uid)
        return added

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _load_messages(self, message_ids: List[str]) -> List[StoredMessage]:
        """Hydrate messages with their reaction/read/delivery sets.

        Caller must hold the lock. Order follows ``message_ids``.
        """
        if not message_ids:
            return []
        marks = _placeholders(message_ids)
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id IN ({marks})",
            message_ids,
        ).fetchall()
        reactions: Dict[str, List[StoredReaction]] = {}
        for mid, emoji, uid, ts in self._conn.execute(
            f"SELECT message_id, emoji, user_id, created_at FROM message_reactions "
            f"WHERE message_id IN ({marks}) ORDER BY created_at",
            message_ids,
        ).fetchall():
            reactions.setdefault(mid, []).append(
                StoredReaction(emoji=emoji, user_id=uid, created_at=ts)
            )
        read_by = self._user_sets("message_reads", message_ids)
        delivered = self._user_sets("message_deliveries", message_ids)

        by_id = {}
        for r in rows:
            by_id[r[0]] = StoredMessage(
                id=r[0],
                group_id=r[1],
                author_id=r[2],
                body=body_from_columns(r[3], r[4], r[5], r[6]),
                reply_to=r[7],
                client_key=r[8],
                created_at=r[9],
                reactions=reactions.get(r[0], []),
                read_by=read_by.get(r[0], []),
                delivered_to=delivered.get(r[0], []),
            )
        return [by_id[mid] for mid in message_ids if mid in by_id]

    def _user_sets(self, table: str, message_ids: List[str]) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {}
        for mid, uid in self._conn.execute(
            f"SELECT message_id, user_id FROM {table} "
            f"WHERE message_id IN ({_placeholders(message_ids)}) ORDER BY user_id",
            message_ids,
        ).fetchall():
            result.setdefault(mid, []).append(uid)
        return result
