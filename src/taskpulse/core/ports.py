# src/taskpulse/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the realtime core.

The relay and the reconciler depend on Protocols instead of concrete classes,
so stores and transports are swappable and tests can use in-memory fakes.
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Awaitable, Protocol

if TYPE_CHECKING:
    from ..social.social_models import ChatMessage
    from ..tasks.alerts import AlertCache
    from ..tasks.task_models import Task


class ConnectionHandle(Protocol):
    """
    One live client connection.

    - user_id is None until the connection authenticated
    - alert_cache / pending_confirmations live exactly as long as the connection
    - send_event never raises: a failed socket write returns False
    """

    session_id: str
    user_id: str | None
    alert_cache: AlertCache
    pending_confirmations: set[int]

    def send_event(self, event: str, data: Any = None) -> Awaitable[bool]: ...


class OutboundMessenger(Protocol):
    """
    Push channel for users who are not connected (e.g. a Matrix room).

    The connector decides how to interpret room_id / to_user_id.
    """

    def send_text(
            self,
            *,
            text: str,
            room_id: str | None = None,
            to_user_id: str | None = None,
    ) -> Awaitable[None]: ...


class TaskRepo(Protocol):
    # Reconciler API
    def list_active_page(
            self, *, user_id: str | None = None, after_id: int = 0, limit: int = 500
    ) -> list[Task]: ...
    def get_task(self, task_id: int) -> Task | None: ...
    def resolved_cycles(self, task_ids: Iterable[int]) -> set[tuple[int, str]]: ...


class SocialRepo(Protocol):
    # Relay API
    def add_message(
            self, *, from_user: str, to_user: str, content: str, now_ts: float | None = None
    ) -> ChatMessage: ...
    def increment_unread(self, owner_id: str, peer_id: str) -> bool: ...
    def reset_unread(self, owner_id: str, peer_id: str) -> None: ...
    def get_username(self, user_id: str) -> str | None: ...
