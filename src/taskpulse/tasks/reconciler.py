# src/taskpulse/tasks/reconciler.py

from __future__ import annotations

"""
Deadline / timer reconciler.

A polling loop that, every interval:
- walks every active (not Done) task, one keyset page at a time,
- evaluates due-date bands and timer state for each task,
- sends new alerts to the online owner/assignee (deduplicated by the
  connection's AlertCache),
- raises a completion-confirmation prompt for expired timers that the user
  has not resolved, at most once per connection,
- optionally pushes the same text to offline users through an OutboundMessenger.

There are no per-task timers: everything is recomputed from stored task
fields, so a restart loses nothing but alert-dedup state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from ..core.ports import ConnectionHandle, OutboundMessenger, TaskRepo
from ..realtime.presence import PresenceRegistry
from .alerts import AlertCache, TaskEvaluation, evaluate_task
from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileReport:
    scanned: int = 0
    alerts_sent: int = 0
    confirmations_raised: int = 0
    pushed: int = 0
    failed_task_ids: list[int] = field(default_factory=list)


class Reconciler:
    """
    Runs one pass at a time: passes are serialized with an asyncio.Lock, so
    the periodic loop and an on-connect pass for one user never interleave.
    """

    def __init__(
        self,
        task_repo: TaskRepo,
        presence: PresenceRegistry,
        *,
        messenger: OutboundMessenger | None = None,
        bucket_seconds: float = 30.0,
        confirmation_window_minutes: float = 24 * 60,
        timer_reminder_every: int | None = 10,
        batch_limit: int = 500,
    ) -> None:
        self._repo = task_repo
        self._presence = presence
        self._messenger = messenger
        self._bucket_seconds = float(bucket_seconds)
        self._window = float(confirmation_window_minutes)
        self._reminder_every = timer_reminder_every
        self._batch_limit = max(1, int(batch_limit))
        self._lock = asyncio.Lock()
        # user_id -> cache for pushes to offline users
        self._push_caches: dict[str, AlertCache] = {}

    def set_messenger(self, messenger: OutboundMessenger | None) -> None:
        """Attach (or detach) the offline push channel once a connector is up."""
        self._messenger = messenger

    # ---- one pass ----

    async def reconcile_once(self, *, now_ts: float | None = None) -> ReconcileReport:
        async with self._lock:
            return await self._pass(user_id=None, now_ts=now_ts)

    async def reconcile_user(self, user_id: str, *, now_ts: float | None = None) -> ReconcileReport:
        """Pass limited to one user's tasks (used right after they connect)."""
        async with self._lock:
            return await self._pass(user_id=user_id, now_ts=now_ts)

    async def _pass(self, *, user_id: str | None, now_ts: float | None) -> ReconcileReport:
        if now_ts is None:
            now_ts = time.time()
        report = ReconcileReport()

        active_ids: set[int] = set()
        after_id = 0
        while True:
            try:
                page = await asyncio.to_thread(
                    self._repo.list_active_page,
                    user_id=user_id,
                    after_id=after_id,
                    limit=self._batch_limit,
                )
                resolved = await asyncio.to_thread(self._repo.resolved_cycles, [t.id for t in page])
            except Exception:
                # Partial scan: pruning against it would drop live state.
                logger.exception("Reconciler could not load tasks (user=%s, after_id=%s)", user_id, after_id)
                return report

            for task in page:
                report.scanned += 1
                active_ids.add(task.id)
                await self._scan_task(task, user_id, resolved, now_ts, report)

            if len(page) < self._batch_limit:
                break
            after_id = page[-1].id

        if user_id is None:
            await self._prune(active_ids)

        if report.alerts_sent or report.confirmations_raised or report.pushed:
            logger.info(
                "Reconcile: scanned=%s alerts=%s confirmations=%s pushed=%s",
                report.scanned,
                report.alerts_sent,
                report.confirmations_raised,
                report.pushed,
            )
        return report

    async def _scan_task(
        self,
        task: Task,
        user_id: str | None,
        resolved: set[tuple[int, str]],
        now_ts: float,
        report: ReconcileReport,
    ) -> None:
        try:
            evaluation = evaluate_task(
                task,
                now_ts,
                resolved_cycles=resolved,
                confirmation_window_minutes=self._window,
                timer_reminder_every=self._reminder_every,
            )
            for recipient in task.recipients():
                if user_id is not None and recipient != user_id:
                    continue
                await self._dispatch(recipient, evaluation, now_ts, report)
        except Exception:
            report.failed_task_ids.append(task.id)
            logger.exception("Reconciler failed on task_id=%s; skipping", task.id)

    async def _dispatch(
        self, user_id: str, evaluation: TaskEvaluation, now_ts: float, report: ReconcileReport
    ) -> None:
        handle = self._presence.lookup(user_id)
        if handle is None:
            await self._push_offline(user_id, evaluation, now_ts, report)
            return

        for alert in evaluation.alerts:
            if not handle.alert_cache.should_emit(alert.key, now_ts, repeat_every=alert.repeat_every):
                continue
            if await handle.send_event("taskAlert", alert.to_payload()):
                report.alerts_sent += 1

        task = evaluation.task
        if evaluation.needs_confirmation:
            await self._raise_confirmation(handle, task, report)
        elif task.id in handle.pending_confirmations:
            handle.pending_confirmations.discard(task.id)
            await handle.send_event("confirmationCleared", {"taskId": task.id})

    async def _raise_confirmation(
        self, handle: ConnectionHandle, task: Task, report: ReconcileReport
    ) -> None:
        if task.id in handle.pending_confirmations:
            return
        # Claim first, then re-check: a completion settling after the claim
        # takes the id back out and sends confirmationCleared itself.
        handle.pending_confirmations.add(task.id)
        try:
            awaiting = await self._still_awaiting(task)
        except Exception:
            handle.pending_confirmations.discard(task.id)
            raise
        if not awaiting:
            handle.pending_confirmations.discard(task.id)
            logger.debug("Task %s resolved during the pass; no prompt", task.id)
            return
        payload = {
            "task": task.to_payload(),
            "message": f'Timer ended for "{task.title}". Did you complete it?',
            "cycle": task.timer_cycle,
        }
        if not await handle.send_event("confirmationRequest", payload):
            # Not shown: let the next connection of this user raise it again.
            handle.pending_confirmations.discard(task.id)
            return
        report.confirmations_raised += 1
        logger.info("Confirmation requested task_id=%s user=%s", task.id, handle.user_id)
        if task.id not in handle.pending_confirmations:
            # Settled while the request was in flight; the clear may have gone out first.
            await handle.send_event("confirmationCleared", {"taskId": task.id})

    async def _still_awaiting(self, task: Task) -> bool:
        """Fresh read: same In Progress timer cycle, and not resolved yet."""
        current = await asyncio.to_thread(self._repo.get_task, task.id)
        if current is None or current.status != TaskStatus.IN_PROGRESS:
            return False
        if current.timer_cycle is None or current.timer_cycle != task.timer_cycle:
            return False
        resolved = await asyncio.to_thread(self._repo.resolved_cycles, [task.id])
        return (task.id, current.timer_cycle) not in resolved

    async def _push_offline(
        self, user_id: str, evaluation: TaskEvaluation, now_ts: float, report: ReconcileReport
    ) -> None:
        if self._messenger is None or not evaluation.alerts:
            return
        cache = self._push_caches.setdefault(user_id, AlertCache(self._bucket_seconds))
        for alert in evaluation.alerts:
            if not cache.should_emit(alert.key, now_ts, repeat_every=alert.repeat_every):
                continue
            try:
                await self._messenger.send_text(text=alert.message, to_user_id=user_id)
                report.pushed += 1
            except Exception:
                logger.warning("Offline push failed user=%s key=%s", user_id, alert.key, exc_info=True)

    async def _prune(self, active_ids: set[int]) -> None:
        for handle in self._presence.handles():
            handle.alert_cache.retain_tasks(active_ids)
            gone = handle.pending_confirmations - active_ids
            handle.pending_confirmations -= gone
            for task_id in sorted(gone):
                await handle.send_event("confirmationCleared", {"taskId": task_id})
        for uid, cache in list(self._push_caches.items()):
            cache.retain_tasks(active_ids)
            if not len(cache):
                del self._push_caches[uid]

    # ---- loop ----

    async def run(self, *, interval_seconds: float = 30.0) -> None:
        """
        Poll forever. Each pass completes before the next sleep starts.

        To stop the reconciler, cancel the coroutine/task.
        """
        sleep_s = max(0.5, float(interval_seconds))
        logger.info("Reconciler started (interval=%ss)", sleep_s)
        while True:
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconcile pass crashed")
            await asyncio.sleep(sleep_s)
