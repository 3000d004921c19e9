# src/taskpulse/tasks/lifecycle.py

"""
Task lifecycle operations exposed to clients.

    To Do --start(+estimate)--> In Progress --estimate expires--> [confirmation pending]
    [confirmation pending] --done--> Done
    [confirmation pending] --revert--> To Do
    [confirmation pending] --dismiss--> In Progress (prompt suppressed for this timer cycle)
    In Progress --done early--> Done

Completing always runs the task transition and the scoring update as one
store transaction (TaskStore.complete_task). Every mutation ends with a
`tasksUpdated` broadcast; resolving a prompt also clears it from the
recipients' live sessions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import tzinfo

from ..core.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError
from ..realtime.relay import MessageRelay
from .task_models import CompletionResult, Priority, Task, TaskStatus
from .task_store import TaskStore

logger = logging.getLogger(__name__)


class TaskLifecycle:
    def __init__(self, store: TaskStore, relay: MessageRelay, *, tz: tzinfo | None = None) -> None:
        self._store = store
        self._relay = relay
        self._tz = tz

    async def _load(self, task_id: int, user_id: str) -> Task:
        task = await asyncio.to_thread(self._store.get_task, int(task_id))
        if task is None:
            raise NotFoundError(f"Task {task_id} not found.")
        if user_id not in task.recipients():
            raise PermissionDeniedError("You can only change your own or assigned tasks.")
        return task

    async def _settle(self, task: Task) -> None:
        """Drop live prompt / alert state for task on its recipients' sessions."""
        for uid in task.recipients():
            handle = self._relay.presence.lookup(uid)
            if handle is None:
                continue
            handle.alert_cache.forget_task(task.id)
            if task.id in handle.pending_confirmations:
                handle.pending_confirmations.discard(task.id)
                await self._relay.send_to_user(uid, "confirmationCleared", {"taskId": task.id})

    async def _changed(self) -> None:
        await self._relay.broadcast("tasksUpdated")

    # ---- operations ----

    async def create_task(
        self,
        user_id: str,
        *,
        title: str,
        description: str = "",
        priority: str | None = None,
        due_at: float | None = None,
        assigned_to: str | None = None,
    ) -> Task:
        task = await asyncio.to_thread(
            self._store.add_task,
            user_id=user_id,
            title=title,
            description=description,
            priority=Priority.from_db(priority),
            due_at=due_at,
            assigned_to=assigned_to,
        )
        await self._changed()
        return task

    async def start_task(
        self, task_id: int, *, user_id: str, estimated_minutes: int | None = None
    ) -> Task:
        await self._load(task_id, user_id)
        task = await asyncio.to_thread(
            self._store.start_task, int(task_id), estimated_minutes=estimated_minutes
        )
        if task is None:
            raise InvalidTransitionError("Only a To Do task can be started.")
        logger.info("Task %s started by %s (estimate=%s min)", task.id, user_id, estimated_minutes)
        await self._changed()
        return task

    async def complete_task(
        self, task_id: int, *, user_id: str, now_ts: float | None = None
    ) -> CompletionResult | None:
        """
        Mark Done and award points. Returns None if the task was already Done
        (nothing changes, nothing is awarded).
        """
        task = await self._load(task_id, user_id)
        result = await asyncio.to_thread(
            self._store.complete_task,
            int(task_id),
            user_id=user_id,
            now_ts=now_ts if now_ts is not None else time.time(),
            tz=self._tz,
        )
        if result is None:
            logger.info("Task %s already Done; completion ignored", task_id)
            return None
        await self._settle(task)
        await self._changed()
        return result

    async def revert_task(self, task_id: int, *, user_id: str) -> Task:
        """Confirmation answered "not done": back to To Do, timer cleared."""
        task = await self._load(task_id, user_id)
        if task.status == TaskStatus.DONE:
            raise InvalidTransitionError("A completed task cannot be reverted here.")
        reverted = await asyncio.to_thread(self._store.revert_task, int(task_id), resolved_by=user_id)
        if reverted is None:
            raise InvalidTransitionError("Only an In Progress task can be moved back to To Do.")
        await self._settle(task)
        await self._changed()
        return reverted

    async def dismiss_confirmation(self, task_id: int, *, user_id: str) -> None:
        """Close the prompt without changing the task; it stays closed for this timer cycle."""
        task = await self._load(task_id, user_id)
        cycle = task.timer_cycle
        if task.status != TaskStatus.IN_PROGRESS or cycle is None:
            raise InvalidTransitionError("There is no running timer to dismiss.")
        await asyncio.to_thread(
            self._store.resolve_timer, task.id, cycle, resolution="dismissed", resolved_by=user_id
        )
        logger.info("Confirmation dismissed task_id=%s user=%s", task.id, user_id)
        await self._settle(task)

    async def set_status(
        self,
        task_id: int,
        status: str | TaskStatus,
        *,
        user_id: str,
        estimated_minutes: int | None = None,
    ) -> Task:
        """Generic status change (board drag & drop), routed through the operations above."""
        target = status if isinstance(status, TaskStatus) else TaskStatus.parse(status)
        task = await self._load(task_id, user_id)
        if target == task.status:
            return task

        if target == TaskStatus.DONE:
            await self.complete_task(task_id, user_id=user_id)
        elif target == TaskStatus.IN_PROGRESS:
            if task.status == TaskStatus.DONE:
                raise InvalidTransitionError("Reopen the task before starting it again.")
            await self.start_task(task_id, user_id=user_id, estimated_minutes=estimated_minutes)
        elif task.status == TaskStatus.DONE:
            reopened = await asyncio.to_thread(self._store.reopen_task, int(task_id))
            if reopened is None:
                raise InvalidTransitionError("Task is no longer Done.")
            await self._changed()
        else:
            await self.revert_task(task_id, user_id=user_id)

        updated = await asyncio.to_thread(self._store.get_task, int(task_id))
        if updated is None:
            raise NotFoundError(f"Task {task_id} not found.")
        return updated
