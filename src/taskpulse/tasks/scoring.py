# src/taskpulse/tasks/scoring.py

"""
Completion & scoring rules.

Pure functions: the store applies the result inside the same transaction that
moves the task to Done, so points are never awarded without the completion
(and vice versa).

Award for one completion:
    base (10) + on-time bonus (5, only when a due date exists and was met)
    + streak bonus (new streak x 2)

Streak, compared by calendar date only:
    last completion yesterday  -> streak + 1
    last completion today      -> unchanged
    anything else / never      -> 1
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, tzinfo

BASE_POINTS = 10
ON_TIME_BONUS = 5
STREAK_MULTIPLIER = 2


@dataclass(slots=True, frozen=True)
class ScoreUpdate:
    points_awarded: int
    points: int
    streak: int
    on_time: bool


def local_date(ts: float, tz: tzinfo | None = None) -> date:
    """Calendar date of a UNIX timestamp (server-local time when tz is None)."""
    return datetime.fromtimestamp(ts, tz).date()


def day_gap(prev_ts: float | None, now_ts: float, tz: tzinfo | None = None) -> int | None:
    if prev_ts is None:
        return None
    return (local_date(now_ts, tz) - local_date(prev_ts, tz)).days


def next_streak(
    streak: int, last_completion_at: float | None, now_ts: float, tz: tzinfo | None = None
) -> int:
    gap = day_gap(last_completion_at, now_ts, tz)
    if gap == 1:
        return max(0, streak) + 1
    if gap == 0:
        return max(1, streak)
    return 1


def is_on_time(due_at: float | None, completed_at: float) -> bool:
    return due_at is not None and completed_at <= due_at


def compute_completion(
    *,
    points: int,
    streak: int,
    last_completion_at: float | None,
    due_at: float | None,
    now_ts: float,
    tz: tzinfo | None = None,
) -> ScoreUpdate:
    on_time = is_on_time(due_at, now_ts)
    base = BASE_POINTS + (ON_TIME_BONUS if on_time else 0)
    new_streak = next_streak(streak, last_completion_at, now_ts, tz)
    awarded = base + new_streak * STREAK_MULTIPLIER
    return ScoreUpdate(
        points_awarded=awarded,
        points=max(0, points) + awarded,
        streak=new_streak,
        on_time=on_time,
    )
