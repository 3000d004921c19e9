# src/taskpulse/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo
from typing import Any

from ..realtime.presence import PresenceRegistry
from ..realtime.relay import MessageRelay
from ..realtime.rooms import RoomRegistry
from ..social.social_store import SocialStore
from ..tasks.lifecycle import TaskLifecycle
from ..tasks.reconciler import Reconciler
from ..tasks.task_store import TaskStore


@dataclass
class AppState:
    """Everything a connector or command needs, wired once in cli.bootstrap."""

    # Settings object (taskpulse.config.Settings or a test stand-in).
    settings: Any

    task_store: TaskStore
    social_store: SocialStore

    presence: PresenceRegistry
    rooms: RoomRegistry
    relay: MessageRelay
    lifecycle: TaskLifecycle
    reconciler: Reconciler

    tz: tzinfo | None = None
