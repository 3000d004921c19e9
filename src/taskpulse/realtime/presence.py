# src/taskpulse/realtime/presence.py

"""
Presence registry: which users currently have a live connection.

Volatile by design: empty at process start, clients re-register on every
new connection.

Rules:
- register(user, handle) replaces any earlier handle (last write wins), which
  covers a client reconnecting before its old socket is torn down
- unregister(handle) only removes the entry if it still points at that exact
  handle, so a late disconnect of the old socket cannot evict the new one

Methods take a threading lock: the event loop mutates the map, the operator
console reads it from its own thread.
"""

from __future__ import annotations

import logging
import threading

from ..core.ports import ConnectionHandle

logger = logging.getLogger(__name__)


class PresenceRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: dict[str, ConnectionHandle] = {}
        self._user_of: dict[ConnectionHandle, str] = {}

    def register(self, user_id: str, handle: ConnectionHandle) -> ConnectionHandle | None:
        """Point user_id at handle. Returns the handle it replaced, if any."""
        if not user_id:
            raise ValueError("user_id is required")
        with self._lock:
            # Same handle re-authenticating as someone else: drop its old entry.
            old_user = self._user_of.pop(handle, None)
            if old_user is not None and old_user != user_id and self._by_user.get(old_user) is handle:
                del self._by_user[old_user]

            previous = self._by_user.get(user_id)
            if previous is not None and previous is not handle:
                self._user_of.pop(previous, None)

            self._by_user[user_id] = handle
            self._user_of[handle] = user_id

        if previous is not None and previous is not handle:
            logger.info(
                "Presence: user %s re-registered (%s replaces %s)",
                user_id,
                handle.session_id,
                previous.session_id,
            )
            return previous
        logger.info("Presence: user %s online (%s)", user_id, handle.session_id)
        return None

    def lookup(self, user_id: str) -> ConnectionHandle | None:
        with self._lock:
            return self._by_user.get(user_id)

    def unregister(self, handle: ConnectionHandle) -> bool:
        """Remove handle's entry. No-op (False) if a newer handle owns the user."""
        with self._lock:
            user_id = self._user_of.pop(handle, None)
            if user_id is None:
                return False
            if self._by_user.get(user_id) is not handle:
                return False
            del self._by_user[user_id]
        logger.info("Presence: user %s offline (%s)", user_id, handle.session_id)
        return True

    def is_online(self, user_id: str) -> bool:
        return self.lookup(user_id) is not None

    def online_users(self) -> list[str]:
        with self._lock:
            return sorted(self._by_user)

    def handles(self) -> list[ConnectionHandle]:
        with self._lock:
            return list(self._by_user.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_user)
