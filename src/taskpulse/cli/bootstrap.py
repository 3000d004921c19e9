# src/taskpulse/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires stores, registries, relay, lifecycle and reconciler into AppState.
"""

from __future__ import annotations

import logging
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import get_settings
from ..core.state import AppState
from ..realtime.presence import PresenceRegistry
from ..realtime.relay import MessageRelay
from ..realtime.rooms import RoomRegistry
from ..social.social_store import SocialStore
from ..tasks.lifecycle import TaskLifecycle
from ..tasks.reconciler import Reconciler
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    if settings.matrix_enabled:
        settings.matrix_store_path.mkdir(parents=True, exist_ok=True)


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Zone used for calendar-day math (streaks, daily counts). None means server local time."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to local time.", name)
        return None


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)
    tz = resolve_timezone(getattr(settings, "timezone", None))
    timeout = float(getattr(settings, "db_timeout_seconds", 5.0))

    # TaskStore first: the social queries join against its tasks table.
    task_store = TaskStore(settings.db_path, timeout=timeout)
    social_store = SocialStore(settings.db_path, timeout=timeout)

    presence = PresenceRegistry()
    rooms = RoomRegistry()
    relay = MessageRelay(social_store, presence, rooms)
    lifecycle = TaskLifecycle(task_store, relay, tz=tz)
    reconciler = Reconciler(
        task_store,
        presence,
        bucket_seconds=float(settings.alert_bucket_seconds),
        confirmation_window_minutes=float(settings.confirmation_window_minutes),
        timer_reminder_every=int(settings.timer_reminder_every_buckets),
        batch_limit=int(getattr(settings, "reconcile_batch_size", 500)),
    )

    return AppState(
        settings=settings,
        task_store=task_store,
        social_store=social_store,
        presence=presence,
        rooms=rooms,
        relay=relay,
        lifecycle=lifecycle,
        reconciler=reconciler,
        tz=tz,
    )
