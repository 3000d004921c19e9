# src/taskpulse/social/social_store.py

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timedelta, tzinfo
from pathlib import Path

from ..core.db import USERS_DDL, SQLiteStore
from ..core.errors import NotFoundError
from .social_models import ChatMessage, FriendEntry, FriendStatus, LeaderboardRow

logger = logging.getLogger(__name__)


def day_bounds(now_ts: float, tz: tzinfo | None = None) -> tuple[float, float]:
    """[start, end) of the calendar day containing now_ts, as UNIX seconds."""
    now = datetime.fromtimestamp(now_ts, tz)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return start.timestamp(), end.timestamp()


class SocialStore(SQLiteStore):
    """
    SQLite store for the social graph and chat.

    - friends: one row per direction (owner_id -> peer_id) with status and the
      owner's unread counter for that peer
    - messages: append-only chat log

    Shares the database file with TaskStore (users/tasks are read for
    usernames, the leaderboard and friend progress).
    """

    def __init__(self, db_path: str | Path = "taskpulse.sqlite3", *, timeout: float = 5.0) -> None:
        super().__init__(db_path, timeout=timeout)
        self._ensure_schema()
        logger.info("SocialStore ready db=%s", self._db_path)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(USERS_DDL)
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS friends (
                    owner_id TEXT NOT NULL,
                    peer_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    unread_count INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (owner_id, peer_id)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    from_user TEXT NOT NULL,
                    to_user TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )
            self._add_missing_columns(cur, "friends", [("unread_count", "INTEGER NOT NULL DEFAULT 0")])
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(from_user, to_user, created_at)"
            )

    @staticmethod
    def _row_to_friend(row: sqlite3.Row) -> FriendEntry:
        keys = row.keys()
        return FriendEntry(
            owner_id=str(row["owner_id"]),
            peer_id=str(row["peer_id"]),
            status=FriendStatus(row["status"]),
            unread_count=int(row["unread_count"] or 0),
            peer_username=row["peer_username"] if "peer_username" in keys else None,
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ChatMessage:
        return ChatMessage(
            id=int(row["id"]),
            from_user=str(row["from_user"]),
            to_user=str(row["to_user"]),
            content=str(row["content"]),
            created_at=float(row["created_at"]),
        )

    # ---- users ----

    def get_username(self, user_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT username FROM users WHERE id = ?", (str(user_id),)).fetchone()
            return str(row["username"]) if row else None

    def search_users(self, query: str, *, exclude_for: str, limit: int = 10) -> list[dict]:
        """Users matching query, excluding exclude_for and anyone already in their friend list."""
        q = (query or "").strip().lower()
        if not q:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, username FROM users
                WHERE username LIKE ? ESCAPE '\\'
                  AND id != ?
                  AND id NOT IN (SELECT peer_id FROM friends WHERE owner_id = ?)
                ORDER BY username ASC
                LIMIT ?
                """,
                (
                    "%" + q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%",
                    str(exclude_for),
                    str(exclude_for),
                    int(limit),
                ),
            ).fetchall()
            return [{"id": r["id"], "username": r["username"]} for r in rows]

    # ---- messages ----

    def add_message(
        self, *, from_user: str, to_user: str, content: str, now_ts: float | None = None
    ) -> ChatMessage:
        text = (content or "").strip()
        if not from_user or not to_user:
            raise ValueError("fromUser and toUser are required")
        if not text:
            raise ValueError("Message content cannot be empty.")
        if now_ts is None:
            now_ts = time.time()

        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO messages(from_user, to_user, content, created_at) VALUES (?, ?, ?, ?)",
                (str(from_user), str(to_user), text, float(now_ts)),
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for messages insert")
            return ChatMessage(
                id=int(rowid),
                from_user=str(from_user),
                to_user=str(to_user),
                content=text,
                created_at=float(now_ts),
            )

    def chat_history(self, user_a: str, user_b: str, *, limit: int = 500) -> list[ChatMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM messages
                    WHERE (from_user = ? AND to_user = ?) OR (from_user = ? AND to_user = ?)
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                )
                ORDER BY created_at ASC, id ASC
                """,
                (str(user_a), str(user_b), str(user_b), str(user_a), int(limit)),
            ).fetchall()
            return [self._row_to_message(r) for r in rows]

    # ---- unread counters ----

    def increment_unread(self, owner_id: str, peer_id: str) -> bool:
        """
        owner_id.unread[peer_id] += 1 as a single UPDATE.

        Returns False when owner has no friend entry for peer (nothing to count against).
        """
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE friends SET unread_count = unread_count + 1 WHERE owner_id = ? AND peer_id = ?",
                (str(owner_id), str(peer_id)),
            )
            return cur.rowcount == 1

    def reset_unread(self, owner_id: str, peer_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE friends SET unread_count = 0 WHERE owner_id = ? AND peer_id = ?",
                (str(owner_id), str(peer_id)),
            )

    def get_unread(self, owner_id: str, peer_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT unread_count FROM friends WHERE owner_id = ? AND peer_id = ?",
                (str(owner_id), str(peer_id)),
            ).fetchone()
            return int(row["unread_count"]) if row else 0

    # ---- friend graph ----

    def get_friend_entry(self, owner_id: str, peer_id: str) -> FriendEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM friends WHERE owner_id = ? AND peer_id = ?",
                (str(owner_id), str(peer_id)),
            ).fetchone()
            return self._row_to_friend(row) if row else None

    def add_friend_request(self, from_user: str, to_user: str, *, now_ts: float | None = None) -> None:
        """
        Write the request on both sides: sender gets `sent`, recipient gets `pending`.

        Raises ValueError if either side already has an entry for the other.
        """
        if not from_user or not to_user:
            raise ValueError("Both users are required")
        if str(from_user) == str(to_user):
            raise ValueError("You cannot send a friend request to yourself.")
        if now_ts is None:
            now_ts = time.time()

        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (str(to_user),)).fetchone() is None:
                raise NotFoundError(f"User {to_user} not found.")
            exists = conn.execute(
                """
                SELECT 1 FROM friends
                WHERE (owner_id = ? AND peer_id = ?) OR (owner_id = ? AND peer_id = ?)
                """,
                (str(from_user), str(to_user), str(to_user), str(from_user)),
            ).fetchone()
            if exists:
                raise ValueError("Request already sent or you are already friends.")
            conn.execute(
                "INSERT INTO friends(owner_id, peer_id, status, created_at) VALUES (?, ?, 'sent', ?)",
                (str(from_user), str(to_user), float(now_ts)),
            )
            conn.execute(
                "INSERT INTO friends(owner_id, peer_id, status, created_at) VALUES (?, ?, 'pending', ?)",
                (str(to_user), str(from_user), float(now_ts)),
            )

    def accept_friend_request(self, user_id: str, requester_id: str) -> bool:
        """Both directions -> accepted. Returns False if there was no pending request."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE friends SET status = 'accepted'
                WHERE owner_id = ? AND peer_id = ? AND status = 'pending'
                """,
                (str(user_id), str(requester_id)),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                "UPDATE friends SET status = 'accepted' WHERE owner_id = ? AND peer_id = ?",
                (str(requester_id), str(user_id)),
            )
            return True

    def list_friend_entries(self, owner_id: str) -> list[FriendEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT f.*, u.username AS peer_username
                FROM friends f
                LEFT JOIN users u ON u.id = f.peer_id
                WHERE f.owner_id = ?
                ORDER BY f.created_at ASC
                """,
                (str(owner_id),),
            ).fetchall()
            return [self._row_to_friend(r) for r in rows]

    # ---- leaderboard / progress ----

    def leaderboard(
        self, *, limit: int = 10, now_ts: float | None = None, tz: tzinfo | None = None
    ) -> list[LeaderboardRow]:
        """Top users by points, with how many tasks each completed today."""
        if now_ts is None:
            now_ts = time.time()
        start, end = day_bounds(now_ts, tz)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.id, u.username, u.points,
                       (SELECT COUNT(*) FROM tasks t
                        WHERE t.user_id = u.id AND t.status = 'Done'
                          AND t.completed_at >= ? AND t.completed_at < ?) AS daily_completed
                FROM users u
                ORDER BY u.points DESC, u.username ASC
                LIMIT ?
                """,
                (start, end, int(limit)),
            ).fetchall()
            return [
                LeaderboardRow(
                    user_id=str(r["id"]),
                    username=str(r["username"]),
                    points=int(r["points"] or 0),
                    daily_completed=int(r["daily_completed"] or 0),
                )
                for r in rows
            ]

    def friend_progress(
        self, user_id: str, *, now_ts: float | None = None, tz: tzinfo | None = None
    ) -> list[dict]:
        """Accepted friends with the number of tasks each completed today."""
        if now_ts is None:
            now_ts = time.time()
        start, end = day_bounds(now_ts, tz)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.id, u.username,
                       (SELECT COUNT(*) FROM tasks t
                        WHERE t.user_id = u.id AND t.status = 'Done'
                          AND t.completed_at >= ? AND t.completed_at < ?) AS daily_completed
                FROM friends f
                JOIN users u ON u.id = f.peer_id
                WHERE f.owner_id = ? AND f.status = 'accepted'
                ORDER BY u.username ASC
                """,
                (start, end, str(user_id)),
            ).fetchall()
            return [
                {"id": r["id"], "username": r["username"], "dailyCompleted": int(r["daily_completed"] or 0)}
                for r in rows
            ]
