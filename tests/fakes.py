# tests/fakes.py

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from taskpulse.core.errors import PersistenceError
from taskpulse.core.ports import OutboundMessenger
from taskpulse.tasks.alerts import AlertCache
from taskpulse.tasks.task_models import Priority, Task, TaskStatus

_handle_ids = itertools.count(1)


class FakeHandle:
    """
    In-memory ConnectionHandle.

    - Captures every event for assertions
    - `broken=True` simulates a dead socket (send_event returns False)
    - `explode_on_task` makes send_event raise for alerts about that task id
    """

    def __init__(self, user_id: str | None = None, *, bucket_seconds: float = 30.0) -> None:
        self.session_id = f"fake{next(_handle_ids)}"
        self.user_id = user_id
        self.alert_cache = AlertCache(bucket_seconds)
        self.pending_confirmations: set[int] = set()
        self.events: list[tuple[str, Any]] = []
        self.broken = False
        self.explode_on_task: int | None = None
        # Called after an event is recorded (simulates work landing while a send awaits).
        self.on_event: Callable[[str, Any], Any] | None = None

    async def send_event(self, event: str, data: Any = None) -> bool:
        if self.explode_on_task is not None and isinstance(data, dict):
            task_id = data.get("taskId") or (data.get("task") or {}).get("id")
            if task_id == self.explode_on_task:
                raise RuntimeError("boom")
        if self.broken:
            return False
        self.events.append((event, data))
        if self.on_event is not None:
            self.on_event(event, data)
        return True

    def names(self) -> list[str]:
        return [e for e, _ in self.events]

    def of(self, event: str) -> list[Any]:
        return [d for e, d in self.events if e == event]


@dataclass(slots=True)
class SentMessage:
    text: str
    room_id: str | None
    to_user_id: str | None


@dataclass(slots=True)
class FakeMessenger(OutboundMessenger):
    """
    Fake OutboundMessenger used by reconciler tests.
    """

    sent: list[SentMessage] = field(default_factory=list)

    async def send_text(
        self,
        *,
        text: str,
        room_id: str | None = None,
        to_user_id: str | None = None,
    ) -> None:
        self.sent.append(SentMessage(text=text, room_id=room_id, to_user_id=to_user_id))


class FakeTaskRepo:
    """
    In-memory TaskRepo used for reconciler unit tests.

    This avoids SQLite and makes tests purely about alert logic:
    band changes, dedup, confirmation prompts and messenger calls.
    """

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self.tasks = {t.id: t for t in tasks}
        self.resolved: set[tuple[int, str]] = set()
        self.fail_loading = False
        self.pages_loaded = 0
        self.fail_get = False
        # Runs after a page is read: lets a test change tasks mid-pass.
        self.after_load: Callable[[], Any] | None = None

    def list_active_page(
        self, *, user_id: str | None = None, after_id: int = 0, limit: int = 500
    ) -> list[Task]:
        if self.fail_loading:
            raise PersistenceError("database is locked")
        self.pages_loaded += 1
        out = sorted(
            (
                t
                for t in self.tasks.values()
                if t.id > after_id
                and t.status != TaskStatus.DONE
                and (user_id is None or user_id in t.recipients())
            ),
            key=lambda t: t.id,
        )[:limit]
        if self.after_load is not None:
            self.after_load()
        return out

    def get_task(self, task_id: int) -> Task | None:
        if self.fail_get:
            raise PersistenceError("database is locked")
        return self.tasks.get(task_id)

    def resolved_cycles(self, task_ids: Iterable[int]) -> set[tuple[int, str]]:
        ids = set(task_ids)
        return {r for r in self.resolved if r[0] in ids}

    def update(self, task_id: int, **changes: Any) -> Task:
        self.tasks[task_id] = replace(self.tasks[task_id], **changes)
        return self.tasks[task_id]


def make_task(
    task_id: int,
    *,
    now: float,
    user_id: str = "alice",
    title: str | None = None,
    status: TaskStatus = TaskStatus.TODO,
    due_at: float | None = None,
    started_at: float | None = None,
    estimated_minutes: int | None = None,
    assigned_to: str | None = None,
) -> Task:
    return Task(
        id=task_id,
        user_id=user_id,
        title=title or f"task {task_id}",
        status=status,
        priority=Priority.NONE,
        order=task_id,
        created_at=now - 3600,
        updated_at=now - 3600,
        assigned_to=assigned_to,
        due_at=due_at,
        started_at=started_at,
        estimated_minutes=estimated_minutes,
    )
