# src/taskpulse/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Values match what clients send over the wire ("To Do", "In Progress", "Done").
    """

    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    DONE = "Done"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TODO
        try:
            return cls(raw)
        except ValueError:
            return cls.TODO

    @classmethod
    def parse(cls, raw: str) -> TaskStatus:
        """Strict parse for client input; also accepts "todo", "in_progress", "done"."""
        key = (raw or "").strip().lower().replace("_", "").replace(" ", "")
        for status in cls:
            if key == status.value.lower().replace(" ", ""):
                return status
        raise ValueError(f"Unknown task status: {raw!r}")


class Priority(StrEnum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    NONE = "No Priority"

    @classmethod
    def from_db(cls, raw: str | None) -> Priority:
        if not raw:
            return cls.NONE
        try:
            return cls(raw)
        except ValueError:
            return cls.NONE


@dataclass(slots=True)
class Task:
    """
    A tracked task. Timestamps are UNIX seconds.

    Invariants kept by the store and the lifecycle operations:
    - started_at / estimated_minutes are set together and only while IN_PROGRESS
    - completed_at is not None iff status is DONE
    """

    id: int
    user_id: str
    title: str
    status: TaskStatus
    priority: Priority
    order: int
    created_at: float
    updated_at: float

    description: str = ""
    assigned_to: str | None = None
    due_at: float | None = None
    started_at: float | None = None
    estimated_minutes: int | None = None
    completed_at: float | None = None

    @property
    def has_timer(self) -> bool:
        return (
            self.status == TaskStatus.IN_PROGRESS
            and self.started_at is not None
            and self.estimated_minutes is not None
        )

    @property
    def estimated_deadline(self) -> float | None:
        if self.started_at is None or self.estimated_minutes is None:
            return None
        return self.started_at + self.estimated_minutes * 60.0

    @property
    def timer_cycle(self) -> str | None:
        """Identity of the current timer run; a fresh start yields a fresh cycle."""
        if self.started_at is None or self.estimated_minutes is None:
            return None
        return f"{self.started_at:.3f}:{self.estimated_minutes}"

    def recipients(self) -> list[str]:
        """Users who should hear about this task's deadlines."""
        out = [self.user_id]
        if self.assigned_to and self.assigned_to != self.user_id:
            out.append(self.assigned_to)
        return out

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "order": self.order,
            "assignedTo": self.assigned_to,
            "dueDate": self.due_at,
            "startedAt": self.started_at,
            "estimatedMinutes": self.estimated_minutes,
            "completedAt": self.completed_at,
        }


@dataclass(slots=True)
class User:
    id: str
    username: str
    points: int = 0
    streak: int = 0
    last_completion_at: float | None = None

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "points": self.points,
            "streak": self.streak,
            "lastCompletionDate": self.last_completion_at,
        }


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Outcome of a Done transition: the updated records and what was awarded."""

    task: Task
    user: User
    points_awarded: int
    on_time: bool
