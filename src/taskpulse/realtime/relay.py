# src/taskpulse/realtime/relay.py

"""
Message relay: routes chat messages and social events to live connections.

Direct messages are persisted first. If that fails the send is aborted and the
error goes back to the sender. Once stored:
- every member of the conversation room gets `receiveMessage`
- an online recipient gets `chatNotification`
- an offline recipient gets unread[from] += 1 (one counter UPDATE)

Social events (friend requests) are live-only: an offline recipient still
sees the request in their friend list, so nothing is queued.

Socket write failures are logged and ignored; the relay never retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ..core.ports import ConnectionHandle, SocialRepo
from ..social.social_models import ChatMessage
from .presence import PresenceRegistry
from .rooms import RoomRegistry

logger = logging.getLogger(__name__)


class MessageRelay:
    def __init__(self, social: SocialRepo, presence: PresenceRegistry, rooms: RoomRegistry) -> None:
        self._social = social
        self._presence = presence
        self._rooms = rooms

    @property
    def presence(self) -> PresenceRegistry:
        return self._presence

    async def _deliver(self, handle: ConnectionHandle, event: str, data: Any) -> bool:
        try:
            return bool(await handle.send_event(event, data))
        except Exception:
            logger.debug("Delivery of %s to %s failed.", event, handle.session_id, exc_info=True)
            return False

    async def send_direct_message(
        self,
        from_user: str,
        to_user: str,
        content: str,
        *,
        room: str | None = None,
        now_ts: float | None = None,
    ) -> ChatMessage:
        if now_ts is None:
            now_ts = time.time()

        # Raises (PersistenceError / ValueError) before anything is delivered.
        message = await asyncio.to_thread(
            self._social.add_message,
            from_user=from_user,
            to_user=to_user,
            content=content,
            now_ts=now_ts,
        )
        payload = message.to_payload()

        if room:
            members = self._rooms.members(room)
            await asyncio.gather(*(self._deliver(h, "receiveMessage", payload) for h in members))

        recipient = self._presence.lookup(to_user)
        if recipient is not None:
            try:
                username = await asyncio.to_thread(self._social.get_username, from_user)
            except Exception:
                logger.debug("Username lookup failed for %s.", from_user, exc_info=True)
                username = None
            await self._deliver(
                recipient,
                "chatNotification",
                {
                    "fromUser": {"id": from_user, "username": username or from_user},
                    "content": message.content,
                    "messageId": message.id,
                },
            )
        else:
            counted = await asyncio.to_thread(self._social.increment_unread, to_user, from_user)
            if not counted:
                logger.debug("No friend entry %s -> %s; unread not counted.", to_user, from_user)

        logger.debug("Message %s relayed %s -> %s (online=%s)", message.id, from_user, to_user, recipient is not None)
        return message

    async def notify_social_event(self, to_user: str, event: str, payload: Any) -> bool:
        """Deliver only if to_user is online; returns whether it was delivered."""
        handle = self._presence.lookup(to_user)
        if handle is None:
            return False
        return await self._deliver(handle, event, payload)

    async def mark_read(self, user_id: str, peer_id: str) -> None:
        await asyncio.to_thread(self._social.reset_unread, user_id, peer_id)

    async def send_to_user(self, user_id: str, event: str, payload: Any = None) -> bool:
        handle = self._presence.lookup(user_id)
        if handle is None:
            return False
        return await self._deliver(handle, event, payload)

    async def broadcast(self, event: str, payload: Any = None) -> int:
        """Send to every registered connection; returns how many accepted it."""
        handles = self._presence.handles()
        results = await asyncio.gather(*(self._deliver(h, event, payload) for h in handles))
        return sum(1 for r in results if r)
