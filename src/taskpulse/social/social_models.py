# src/taskpulse/social/social_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class FriendStatus(StrEnum):
    PENDING = "pending"  # they asked me
    SENT = "sent"  # I asked them
    ACCEPTED = "accepted"


@dataclass(slots=True)
class FriendEntry:
    """One edge of a user's friend list, as seen from owner_id."""

    owner_id: str
    peer_id: str
    status: FriendStatus
    unread_count: int = 0
    peer_username: str | None = None

    def to_payload(self) -> dict:
        return {
            "user": {"id": self.peer_id, "username": self.peer_username},
            "status": self.status.value,
            "unreadCount": self.unread_count,
        }


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """Immutable once stored; ordered by created_at."""

    id: int
    from_user: str
    to_user: str
    content: str
    created_at: float

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "fromUser": self.from_user,
            "toUser": self.to_user,
            "content": self.content,
            "createdAt": self.created_at,
        }


@dataclass(slots=True, frozen=True)
class LeaderboardRow:
    user_id: str
    username: str
    points: int
    daily_completed: int

    def to_payload(self) -> dict:
        return {
            "id": self.user_id,
            "username": self.username,
            "points": self.points,
            "dailyCompleted": self.daily_completed,
        }
