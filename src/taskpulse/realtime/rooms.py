# src/taskpulse/realtime/rooms.py

from __future__ import annotations

import logging
import threading

from ..core.ports import ConnectionHandle

logger = logging.getLogger(__name__)


def conversation_room(user_a: str, user_b: str) -> str:
    """Canonical room name for a two-party conversation (order independent)."""
    a, b = sorted((str(user_a), str(user_b)))
    return f"dm:{a}:{b}"


class RoomRegistry:
    """Named rooms scoping message delivery; membership ends with the connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._members: dict[str, set[ConnectionHandle]] = {}

    def join(self, room: str, handle: ConnectionHandle) -> None:
        if not room:
            raise ValueError("room is required")
        with self._lock:
            self._members.setdefault(room, set()).add(handle)
        logger.debug("Room %s: joined by %s", room, handle.session_id)

    def leave(self, room: str, handle: ConnectionHandle) -> None:
        with self._lock:
            members = self._members.get(room)
            if not members:
                return
            members.discard(handle)
            if not members:
                del self._members[room]

    def leave_all(self, handle: ConnectionHandle) -> int:
        left = 0
        with self._lock:
            for room in list(self._members):
                members = self._members[room]
                if handle in members:
                    members.discard(handle)
                    left += 1
                    if not members:
                        del self._members[room]
        return left

    def members(self, room: str) -> list[ConnectionHandle]:
        with self._lock:
            return list(self._members.get(room, ()))

    def rooms_of(self, handle: ConnectionHandle) -> list[str]:
        with self._lock:
            return sorted(r for r, m in self._members.items() if handle in m)
