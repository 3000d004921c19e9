# tests/test_social_store.py

from __future__ import annotations

from datetime import timezone

import pytest

from taskpulse.core.errors import NotFoundError
from taskpulse.social.social_models import FriendStatus

NOW = 1_700_000_000.0
UTC = timezone.utc


@pytest.fixture()
def stores(state):
    for uid in ("alice", "bob", "carol"):
        state.task_store.ensure_user(uid, uid.capitalize())
    return state.task_store, state.social_store


def test_friend_request_writes_both_sides(stores) -> None:
    _, social = stores
    social.add_friend_request("alice", "bob", now_ts=NOW)

    sent = social.get_friend_entry("alice", "bob")
    pending = social.get_friend_entry("bob", "alice")
    assert sent is not None and sent.status == FriendStatus.SENT
    assert pending is not None and pending.status == FriendStatus.PENDING

    assert social.accept_friend_request("bob", "alice")
    assert social.get_friend_entry("alice", "bob").status == FriendStatus.ACCEPTED
    assert social.get_friend_entry("bob", "alice").status == FriendStatus.ACCEPTED

    # Nothing left to accept.
    assert not social.accept_friend_request("bob", "alice")


def test_friend_request_rejections(stores) -> None:
    _, social = stores
    with pytest.raises(ValueError):
        social.add_friend_request("alice", "alice")
    with pytest.raises(NotFoundError):
        social.add_friend_request("alice", "ghost")

    social.add_friend_request("alice", "bob")
    with pytest.raises(ValueError):
        social.add_friend_request("bob", "alice")


def test_unread_counter_needs_friend_entry(stores) -> None:
    _, social = stores
    assert social.increment_unread("bob", "alice") is False

    social.add_friend_request("alice", "bob")
    assert social.increment_unread("bob", "alice")
    assert social.increment_unread("bob", "alice")
    assert social.get_unread("bob", "alice") == 2

    social.reset_unread("bob", "alice")
    assert social.get_unread("bob", "alice") == 0


def test_chat_history_is_ordered_and_scoped_to_pair(stores) -> None:
    _, social = stores
    social.add_message(from_user="alice", to_user="bob", content="hi", now_ts=NOW)
    social.add_message(from_user="bob", to_user="alice", content="hey", now_ts=NOW + 1)
    social.add_message(from_user="alice", to_user="carol", content="other", now_ts=NOW + 2)

    history = social.chat_history("bob", "alice")
    assert [m.content for m in history] == ["hi", "hey"]

    with pytest.raises(ValueError):
        social.add_message(from_user="alice", to_user="bob", content="   ")


def test_search_excludes_self_and_known_peers(stores) -> None:
    _, social = stores
    social.add_friend_request("alice", "bob")
    found = social.search_users("o", exclude_for="alice")
    assert [u["id"] for u in found] == ["carol"]
    assert social.search_users("", exclude_for="alice") == []


def test_leaderboard_and_friend_progress_count_today(stores) -> None:
    tasks, social = stores
    day_start = 1_700_006_400.0  # 2023-11-15 00:00 UTC
    now = day_start + 12 * 3600

    t1 = tasks.add_task(user_id="bob", title="yesterday", now_ts=day_start - 7200)
    tasks.complete_task(t1.id, user_id="bob", now_ts=day_start - 3600, tz=UTC)
    t2 = tasks.add_task(user_id="bob", title="today", now_ts=day_start)
    tasks.complete_task(t2.id, user_id="bob", now_ts=day_start + 3600, tz=UTC)

    rows = social.leaderboard(limit=2, now_ts=now, tz=UTC)
    assert rows[0].user_id == "bob"
    assert rows[0].daily_completed == 1
    assert rows[0].points > 0
    assert len(rows) == 2

    social.add_friend_request("alice", "bob")
    assert social.friend_progress("alice", now_ts=now, tz=UTC) == []
    social.accept_friend_request("bob", "alice")
    progress = social.friend_progress("alice", now_ts=now, tz=UTC)
    assert progress == [{"id": "bob", "username": "bob", "dailyCompleted": 1}]
