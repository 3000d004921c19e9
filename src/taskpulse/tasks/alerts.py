# src/taskpulse/tasks/alerts.py

"""
Deadline / timer alert rules and the per-session alert cache.

evaluate_task() is pure: given a task, the clock and the set of resolved
timer cycles it returns the alerts that apply right now and whether a
completion-confirmation prompt is due. Whether an alert is actually shown is
decided by AlertCache, which only suppresses repeats; it is never consulted
for confirmation prompts.

Due-date bands (minutes left):
    <= 0        overdue
    (0, 5]      urgent
    (5, 10]     10min
    (10, 60]    10-minute buckets: 20min .. 60min (upper edge)
    > 60        hour buckets: 1h, 2h, ...

Each (task, band) fires once; moving into a tighter band fires again.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from .task_models import Task, TaskStatus

MINUTE = 60.0


class AlertKind(StrEnum):
    DUE = "due"
    TIMER_ALMOST = "timer-almost"
    TIMER_ENDED = "timer-ended"


class AlertLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class Alert:
    key: str
    task_id: int
    kind: AlertKind
    band: str
    level: AlertLevel
    title: str
    message: str
    # None: fire once per key. N: may fire again every N buckets while it applies.
    repeat_every: int | None = None

    def to_payload(self) -> dict:
        return {
            "id": self.key,
            "taskId": self.task_id,
            "kind": self.kind.value,
            "band": self.band,
            "level": self.level.value,
            "taskTitle": self.title,
            "message": self.message,
        }


@dataclass(slots=True)
class TaskEvaluation:
    task: Task
    alerts: list[Alert] = field(default_factory=list)
    needs_confirmation: bool = False


def due_band(minutes_left: float) -> str:
    if minutes_left <= 0:
        return "overdue"
    if minutes_left <= 5:
        return "urgent"
    if minutes_left <= 10:
        return "10min"
    if minutes_left <= 60:
        return f"{math.ceil(minutes_left / 10) * 10}min"
    return f"{int(minutes_left // 60)}h"


def _due_alert(task: Task, minutes_left: float) -> Alert:
    band = due_band(minutes_left)
    title = task.title
    if band == "overdue":
        level, message = AlertLevel.ERROR, f'"{title}" is overdue!'
    elif band == "urgent":
        level = AlertLevel.WARNING
        message = f'"{title}" due in ~{math.ceil(minutes_left)} minute(s)!'
    elif band.endswith("min"):
        level = AlertLevel.INFO
        message = f'"{title}" due within {band[:-3]} minutes.'
    else:
        level = AlertLevel.INFO
        message = f'"{title}" due in ~{band[:-1]} hour(s).'
    return Alert(
        key=f"{task.id}-due-{band}",
        task_id=task.id,
        kind=AlertKind.DUE,
        band=band,
        level=level,
        title=title,
        message=message,
    )


def evaluate_task(
    task: Task,
    now_ts: float,
    *,
    resolved_cycles: set[tuple[int, str]] | None = None,
    confirmation_window_minutes: float = 24 * 60,
    timer_reminder_every: int | None = 10,
) -> TaskEvaluation:
    """
    Alerts for one task at now_ts.

    A confirmation is due when the task is In Progress with an expired
    estimate (expired less than confirmation_window_minutes ago) and its
    current timer cycle has not been resolved by the user.
    """
    result = TaskEvaluation(task=task)
    if task.status == TaskStatus.DONE:
        return result

    if task.due_at is not None:
        minutes_left = (task.due_at - now_ts) / MINUTE
        result.alerts.append(_due_alert(task, minutes_left))

    deadline = task.estimated_deadline
    if not task.has_timer or deadline is None:
        return result

    minutes_left = (deadline - now_ts) / MINUTE
    if 0 < minutes_left <= 5:
        result.alerts.append(
            Alert(
                key=f"{task.id}-timer-almost-{task.timer_cycle}",
                task_id=task.id,
                kind=AlertKind.TIMER_ALMOST,
                band="urgent",
                level=AlertLevel.INFO,
                title=task.title,
                message=f'Timer: "{task.title}" completes in ~{math.ceil(minutes_left)} minute(s).',
            )
        )
        return result

    if minutes_left > 0:
        return result

    resolved = (task.id, task.timer_cycle or "") in (resolved_cycles or set())
    if resolved:
        return result

    result.alerts.append(
        Alert(
            key=f"{task.id}-timer-ended-{task.timer_cycle}",
            task_id=task.id,
            kind=AlertKind.TIMER_ENDED,
            band="ended",
            level=AlertLevel.WARNING,
            title=task.title,
            message=f'Timer ended for "{task.title}". Please confirm.',
            repeat_every=timer_reminder_every,
        )
    )
    if -minutes_left <= confirmation_window_minutes:
        result.needs_confirmation = True
    return result


class AlertCache:
    """
    alert key -> bucket index in which it last fired.

    Buckets are fixed windows of bucket_seconds (the polling cadence), so a
    second pass inside the same bucket never re-fires anything. Losing the
    cache only risks one repeated informational alert.
    """

    def __init__(self, bucket_seconds: float = 30.0) -> None:
        self._bucket_seconds = max(1.0, float(bucket_seconds))
        self._last: dict[str, int] = {}

    def bucket(self, now_ts: float) -> int:
        return int(now_ts // self._bucket_seconds)

    def should_emit(self, key: str, now_ts: float, *, repeat_every: int | None = None) -> bool:
        """True (and records the firing) if key has not fired, or is due to repeat."""
        bucket = self.bucket(now_ts)
        last = self._last.get(key)
        if last is not None:
            if repeat_every is None or bucket - last < max(1, repeat_every):
                return False
        self._last[key] = bucket
        return True

    def last_bucket(self, key: str) -> int | None:
        return self._last.get(key)

    def forget_task(self, task_id: int) -> int:
        prefix = f"{task_id}-"
        stale = [k for k in self._last if k.startswith(prefix)]
        for k in stale:
            del self._last[k]
        return len(stale)

    def retain_tasks(self, task_ids: Iterable[int]) -> int:
        """Drop entries of tasks that are no longer active."""
        keep = {f"{t}-" for t in task_ids}
        stale = [k for k in self._last if k.split("-", 1)[0] + "-" not in keep]
        for k in stale:
            del self._last[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last)

    def __contains__(self, key: object) -> bool:
        return key in self._last
