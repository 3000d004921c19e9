# src/taskpulse/cli/commands.py

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import cast

from ..core.state import AppState
from ..tasks.alerts import evaluate_task

CommandEmitter = Callable[[str], None]
CommandHandler4 = Callable[[AppState, list[str], str | None, str | None], str]
CommandHandler5 = Callable[
    [AppState, list[str], str | None, str | None, CommandEmitter | None], str
]
CommandHandler = CommandHandler4 | CommandHandler5

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the operator console (/help, /online, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}
        self._aliases: dict[str, list[str]] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        self._aliases[key] = [a.lower() for a in aliases]
        for alias in self._aliases[key]:
            self._handlers[alias] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        room_id: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 5

        if nparams >= 5:
            h5 = cast(CommandHandler5, handler)
            return h5(state, args, user_id, room_id, emit)

        h4 = cast(CommandHandler4, handler)
        return h4(state, args, user_id, room_id)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name in sorted(self._help):
            aliases = ", ".join(f"/{a}" for a in self._aliases.get(name, []))
            suffix = f" (also {aliases})" if aliases else ""
            lines.append(f"  /{name} - {self._help[name]}{suffix}")
        lines.append("  /exit - Stop the server.")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M")


def cmd_help(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    return registry.build_help()


def cmd_status(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    settings = state.settings
    return (
        "Status:\n"
        f"  Listening: {getattr(settings, 'host', '?')}:{getattr(settings, 'port', '?')}\n"
        f"  Online users: {len(state.presence)}\n"
        f"  Tasks stored: {state.task_store.count_tasks()}\n"
        f"  Reconcile every: {getattr(settings, 'reconcile_interval_seconds', '?')}s"
    )


def cmd_online(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    users = state.presence.online_users()
    if not users:
        return "Nobody is online."
    lines = [f"Online ({len(users)}):"]
    for uid in users:
        handle = state.presence.lookup(uid)
        rooms = state.rooms.rooms_of(handle) if handle is not None else []
        session = handle.session_id if handle is not None else "?"
        lines.append(f"  {uid} [{session}] rooms={', '.join(rooms) or '-'}")
    return "\n".join(lines)


def cmd_tasks(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """
    /tasks          -> all active tasks
    /tasks <user>   -> active tasks of one user
    """
    target = args[0] if args else None
    tasks = state.task_store.list_active_tasks(user_id=target, limit=50)
    if not tasks:
        return "No active tasks."
    lines = ["Active tasks:"]
    for t in tasks:
        timer = f" timer={t.estimated_minutes}m from {_fmt_ts(t.started_at)}" if t.has_timer else ""
        lines.append(f"  #{t.id} [{t.status.value}] {t.title} (owner={t.user_id}, due={_fmt_ts(t.due_at)}){timer}")
    return "\n".join(lines)


def cmd_alerts(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    """
    /alerts <user> -> what the reconciler would raise for this user right now (dry run)
    """
    if not args:
        return "Usage: /alerts <user_id>"
    target = args[0]
    now_ts = time.time()
    tasks = list(state.task_store.iter_active_tasks(user_id=target))
    resolved = state.task_store.resolved_cycles([t.id for t in tasks])
    settings = state.settings
    if emit is not None and len(tasks) > 20:
        emit(f"Evaluating {len(tasks)} active tasks...")

    lines: list[str] = []
    for task in tasks:
        ev = evaluate_task(
            task,
            now_ts,
            resolved_cycles=resolved,
            confirmation_window_minutes=float(getattr(settings, "confirmation_window_minutes", 24 * 60)),
        )
        for alert in ev.alerts:
            lines.append(f"  [{alert.level.value}] {alert.key}: {alert.message}")
        if ev.needs_confirmation:
            lines.append(f"  [confirm] #{task.id} {task.title}: timer ended, awaiting confirmation")
    if not lines:
        return f"No alerts for {target}."
    return "\n".join([f"Alerts for {target}:"] + lines)


def cmd_leaderboard(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    limit = int(getattr(state.settings, "leaderboard_limit", 10))
    rows = state.social_store.leaderboard(limit=limit, tz=state.tz)
    if not rows:
        return "Leaderboard is empty."
    lines = ["Leaderboard:"]
    for i, r in enumerate(rows, start=1):
        lines.append(f"  {i}. {r.username} - {r.points} pts ({r.daily_completed} today)")
    return "\n".join(lines)


def cmd_user(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    if not args:
        return "Usage: /user <user_id>"
    user = state.task_store.get_user(args[0])
    if user is None:
        return f"Unknown user: {args[0]}"
    online = "online" if state.presence.is_online(user.id) else "offline"
    return (
        f"User {user.id} ({user.username}, {online}):\n"
        f"  Points: {user.points}\n"
        f"  Streak: {user.streak}\n"
        f"  Last completion: {_fmt_ts(user.last_completion_at)}"
    )


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show server status.")
registry.register("online", cmd_online, help_text="List connected users.", aliases=["who"])
registry.register("tasks", cmd_tasks, help_text="Active tasks: /tasks [user_id].")
registry.register("alerts", cmd_alerts, help_text="Dry-run alerts for a user: /alerts <user_id>.")
registry.register("leaderboard", cmd_leaderboard, help_text="Top users by points.", aliases=["top"])
registry.register("user", cmd_user, help_text="Points and streak: /user <user_id>.")
