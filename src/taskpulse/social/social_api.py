# src/taskpulse/social/social_api.py

from __future__ import annotations

import asyncio
import logging
import time

from ..core.state import AppState
from .social_models import FriendStatus

logger = logging.getLogger(__name__)


async def send_friend_request(state: AppState, from_user: str, to_user: str) -> bool:
    """
    Record the request on both sides, then toast the recipient if online.

    Returns whether the live notification was delivered (False is not an error:
    the request is already visible in the recipient's friend list).
    """
    await asyncio.to_thread(state.social_store.add_friend_request, from_user, to_user)
    username = await asyncio.to_thread(state.social_store.get_username, from_user)
    delivered = await state.relay.notify_social_event(
        to_user,
        "friendRequest",
        {"fromUser": {"id": from_user, "username": username or from_user}},
    )
    if delivered:
        logger.info("Friend request %s -> %s delivered live", from_user, to_user)
    return delivered


async def accept_friend_request(state: AppState, user_id: str, requester_id: str) -> bool:
    accepted = await asyncio.to_thread(state.social_store.accept_friend_request, user_id, requester_id)
    if not accepted:
        raise ValueError("There is no pending request from this user.")
    return True


async def list_friends(state: AppState, user_id: str) -> dict:
    entries = await asyncio.to_thread(state.social_store.list_friend_entries, user_id)
    return {
        "friends": [e.to_payload() for e in entries if e.status == FriendStatus.ACCEPTED],
        "pendingRequests": [e.to_payload() for e in entries if e.status == FriendStatus.PENDING],
    }


async def search_users(state: AppState, user_id: str, query: str) -> list[dict]:
    return await asyncio.to_thread(state.social_store.search_users, query, exclude_for=user_id)


async def chat_history(state: AppState, user_id: str, peer_id: str) -> list[dict]:
    messages = await asyncio.to_thread(state.social_store.chat_history, user_id, peer_id)
    return [m.to_payload() for m in messages]


async def leaderboard(state: AppState, *, now_ts: float | None = None) -> list[dict]:
    limit = int(getattr(state.settings, "leaderboard_limit", 10))
    rows = await asyncio.to_thread(
        state.social_store.leaderboard,
        limit=limit,
        now_ts=now_ts if now_ts is not None else time.time(),
        tz=state.tz,
    )
    return [r.to_payload() for r in rows]


async def friend_progress(state: AppState, user_id: str, *, now_ts: float | None = None) -> list[dict]:
    return await asyncio.to_thread(
        state.social_store.friend_progress,
        user_id,
        now_ts=now_ts if now_ts is not None else time.time(),
        tz=state.tz,
    )
