# tests/test_reconciler.py

from __future__ import annotations

import pytest

from taskpulse.realtime.presence import PresenceRegistry
from taskpulse.tasks.reconciler import Reconciler
from taskpulse.tasks.task_models import TaskStatus

from .fakes import FakeHandle, FakeMessenger, FakeTaskRepo, make_task

NOW = 1_700_000_000.0


def _reconciler(repo: FakeTaskRepo, presence: PresenceRegistry, **kw) -> Reconciler:
    kw.setdefault("bucket_seconds", 30.0)
    return Reconciler(repo, presence, **kw)


def _expired_timer_task(task_id: int = 1, **kw):
    return make_task(
        task_id,
        now=NOW,
        status=TaskStatus.IN_PROGRESS,
        started_at=NOW - 31 * 60,
        estimated_minutes=30,
        **kw,
    )


@pytest.mark.asyncio
async def test_same_pass_twice_sends_each_alert_once() -> None:
    repo = FakeTaskRepo([make_task(1, now=NOW, due_at=NOW - 1)])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    first = await rec.reconcile_once(now_ts=NOW)
    second = await rec.reconcile_once(now_ts=NOW + 5)

    assert first.alerts_sent == 1
    assert second.alerts_sent == 0
    assert [d["id"] for d in alice.of("taskAlert")] == ["1-due-overdue"]


@pytest.mark.asyncio
async def test_tighter_band_fires_again() -> None:
    repo = FakeTaskRepo([make_task(1, now=NOW, due_at=NOW + 8 * 60)])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    await rec.reconcile_once(now_ts=NOW)
    await rec.reconcile_once(now_ts=NOW + 4 * 60)
    await rec.reconcile_once(now_ts=NOW + 9 * 60)

    assert [d["band"] for d in alice.of("taskAlert")] == ["10min", "urgent", "overdue"]


@pytest.mark.asyncio
async def test_confirmation_raised_once_per_session_and_again_after_reconnect() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    presence = PresenceRegistry()
    first = FakeHandle("alice")
    presence.register("alice", first)
    rec = _reconciler(repo, presence)

    r1 = await rec.reconcile_once(now_ts=NOW)
    r2 = await rec.reconcile_once(now_ts=NOW + 60)
    assert r1.confirmations_raised == 1
    assert r2.confirmations_raised == 0
    assert len(first.of("confirmationRequest")) == 1
    assert first.pending_confirmations == {1}

    # Reconnect: the new connection has no memory of the prompt.
    second = FakeHandle("alice")
    presence.register("alice", second)
    r3 = await rec.reconcile_user("alice", now_ts=NOW + 90)
    assert r3.confirmations_raised == 1
    assert second.of("confirmationRequest")[0]["task"]["id"] == 1


@pytest.mark.asyncio
async def test_resolved_cycle_suppresses_prompt_and_clears_pending() -> None:
    task = _expired_timer_task()
    repo = FakeTaskRepo([task])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    await rec.reconcile_once(now_ts=NOW)
    repo.resolved.add((1, task.timer_cycle or ""))
    report = await rec.reconcile_once(now_ts=NOW + 3600)

    assert report.confirmations_raised == 0
    assert alice.pending_confirmations == set()
    assert alice.of("confirmationCleared") == [{"taskId": 1}]


@pytest.mark.asyncio
async def test_new_timer_cycle_prompts_again() -> None:
    task = _expired_timer_task()
    repo = FakeTaskRepo([task])
    repo.resolved.add((1, task.timer_cycle or ""))
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    assert (await rec.reconcile_once(now_ts=NOW)).confirmations_raised == 0
    repo.update(1, started_at=NOW - 11 * 60, estimated_minutes=10)
    assert (await rec.reconcile_once(now_ts=NOW + 30)).confirmations_raised == 1


@pytest.mark.asyncio
async def test_failed_delivery_leaves_prompt_for_next_pass() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    alice.broken = True
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    report = await rec.reconcile_once(now_ts=NOW)
    assert report.confirmations_raised == 0
    assert alice.pending_confirmations == set()

    alice.broken = False
    report = await rec.reconcile_once(now_ts=NOW + 30)
    assert report.confirmations_raised == 1


@pytest.mark.asyncio
async def test_one_failing_task_does_not_stop_the_pass() -> None:
    repo = FakeTaskRepo(
        [
            make_task(1, now=NOW, due_at=NOW - 120),
            make_task(2, now=NOW, due_at=NOW - 60),
        ]
    )
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    alice.explode_on_task = 1
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    report = await rec.reconcile_once(now_ts=NOW)

    assert report.failed_task_ids == [1]
    assert report.scanned == 2
    assert [d["taskId"] for d in alice.of("taskAlert")] == [2]


@pytest.mark.asyncio
async def test_load_failure_returns_empty_report() -> None:
    repo = FakeTaskRepo([make_task(1, now=NOW, due_at=NOW - 1)])
    repo.fail_loading = True
    rec = _reconciler(repo, PresenceRegistry())
    report = await rec.reconcile_once(now_ts=NOW)
    assert report.scanned == 0


@pytest.mark.asyncio
async def test_offline_users_are_pushed_through_messenger_once() -> None:
    repo = FakeTaskRepo([make_task(1, now=NOW, due_at=NOW - 1, assigned_to="bob")])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    messenger = FakeMessenger()
    rec = _reconciler(repo, presence, messenger=messenger)

    await rec.reconcile_once(now_ts=NOW)
    await rec.reconcile_once(now_ts=NOW + 60)

    assert len(alice.of("taskAlert")) == 1
    assert [m.to_user_id for m in messenger.sent] == ["bob"]
    assert "overdue" in messenger.sent[0].text


@pytest.mark.asyncio
async def test_user_pass_only_touches_that_user() -> None:
    repo = FakeTaskRepo(
        [
            make_task(1, now=NOW, due_at=NOW - 1, user_id="alice"),
            make_task(2, now=NOW, due_at=NOW - 1, user_id="bob"),
        ]
    )
    presence = PresenceRegistry()
    alice, bob = FakeHandle("alice"), FakeHandle("bob")
    presence.register("alice", alice)
    presence.register("bob", bob)
    rec = _reconciler(repo, presence)

    report = await rec.reconcile_user("alice", now_ts=NOW)
    assert report.scanned == 1
    assert len(alice.of("taskAlert")) == 1
    assert bob.events == []


@pytest.mark.asyncio
async def test_timer_ended_reminder_repeats() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence, timer_reminder_every=2)

    for i in range(5):
        await rec.reconcile_once(now_ts=NOW + i * 30)

    ended = [d for d in alice.of("taskAlert") if d["kind"] == "timer-ended"]
    # buckets 0, 2, 4
    assert len(ended) == 3
    assert len(alice.of("confirmationRequest")) == 1


@pytest.mark.asyncio
async def test_pass_pages_through_every_active_task() -> None:
    # bob's pile of overdue tasks fills the first pages; alice's timer sorts last.
    overdue = [make_task(i, now=NOW, user_id="bob", due_at=NOW - 3600) for i in range(1, 8)]
    repo = FakeTaskRepo(overdue + [_expired_timer_task(8)])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence, batch_limit=3)

    report = await rec.reconcile_once(now_ts=NOW)

    assert report.scanned == 8
    assert repo.pages_loaded == 3
    assert report.confirmations_raised == 1
    assert alice.of("confirmationRequest")[0]["task"]["id"] == 8


@pytest.mark.asyncio
async def test_exact_multiple_of_page_size_ends_on_empty_page() -> None:
    repo = FakeTaskRepo([make_task(i, now=NOW, due_at=NOW - 1) for i in range(1, 5)])
    rec = _reconciler(repo, PresenceRegistry(), batch_limit=2)

    report = await rec.reconcile_once(now_ts=NOW)

    assert report.scanned == 4
    assert repo.pages_loaded == 3


@pytest.mark.asyncio
async def test_task_completed_mid_pass_gets_no_prompt() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    repo.after_load = lambda: repo.update(1, status=TaskStatus.DONE)
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    report = await rec.reconcile_once(now_ts=NOW)

    assert report.confirmations_raised == 0
    assert alice.of("confirmationRequest") == []
    assert alice.pending_confirmations == set()


@pytest.mark.asyncio
async def test_dismissed_mid_pass_gets_no_prompt() -> None:
    task = _expired_timer_task()
    repo = FakeTaskRepo([task])
    repo.after_load = lambda: repo.resolved.add((1, task.timer_cycle or ""))
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    report = await rec.reconcile_once(now_ts=NOW)

    assert report.confirmations_raised == 0
    assert alice.pending_confirmations == set()


@pytest.mark.asyncio
async def test_settled_while_request_in_flight_is_cleared_after() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")

    def settle(event, data) -> None:
        if event == "confirmationRequest":
            alice.pending_confirmations.discard(1)

    alice.on_event = settle
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    await rec.reconcile_once(now_ts=NOW)

    assert [n for n in alice.names() if n.startswith("confirmation")] == [
        "confirmationRequest",
        "confirmationCleared",
    ]


@pytest.mark.asyncio
async def test_prompt_for_task_leaving_active_set_is_cleared() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    await rec.reconcile_once(now_ts=NOW)
    assert alice.pending_confirmations == {1}

    # Finished somewhere that did not settle this connection.
    repo.update(1, status=TaskStatus.DONE)
    await rec.reconcile_once(now_ts=NOW + 30)

    assert alice.pending_confirmations == set()
    assert alice.of("confirmationCleared") == [{"taskId": 1}]


@pytest.mark.asyncio
async def test_failed_page_load_keeps_pending_prompts() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    await rec.reconcile_once(now_ts=NOW)
    repo.fail_loading = True
    await rec.reconcile_once(now_ts=NOW + 30)

    assert alice.pending_confirmations == {1}
    assert alice.of("confirmationCleared") == []


@pytest.mark.asyncio
async def test_offline_push_cache_dropped_when_user_has_no_active_tasks() -> None:
    repo = FakeTaskRepo([make_task(1, now=NOW, user_id="bob", due_at=NOW - 1)])
    rec = _reconciler(repo, PresenceRegistry(), messenger=FakeMessenger())

    await rec.reconcile_once(now_ts=NOW)
    assert "bob" in rec._push_caches

    repo.update(1, status=TaskStatus.DONE)
    await rec.reconcile_once(now_ts=NOW + 30)
    assert rec._push_caches == {}


@pytest.mark.asyncio
async def test_failed_recheck_leaves_prompt_for_next_pass() -> None:
    repo = FakeTaskRepo([_expired_timer_task()])
    repo.fail_get = True
    presence = PresenceRegistry()
    alice = FakeHandle("alice")
    presence.register("alice", alice)
    rec = _reconciler(repo, presence)

    report = await rec.reconcile_once(now_ts=NOW)
    assert report.failed_task_ids == [1]
    assert alice.pending_confirmations == set()

    repo.fail_get = False
    report = await rec.reconcile_once(now_ts=NOW + 30)
    assert report.confirmations_raised == 1
