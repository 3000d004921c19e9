# src/taskpulse/tasks/task_store.py

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from datetime import tzinfo
from pathlib import Path

from ..core.db import USERS_DDL, SQLiteStore
from ..core.errors import NotFoundError, PersistenceError
from .scoring import compute_completion
from .task_models import CompletionResult, Priority, Task, TaskStatus, User

logger = logging.getLogger(__name__)


class TaskStore(SQLiteStore):
    """
    SQLite store for tasks, users (points/streak) and timer resolutions.

    Timer resolutions record that a user acted on a confirmation prompt for a
    given timer cycle (task id + started_at/estimated_minutes). They are what
    keeps a dismissed prompt from coming back, across reconnects and restarts.

    Status transitions are conditional UPDATEs (`... WHERE status = ?`) so two
    concurrent callers cannot both apply the same transition.
    """

    def __init__(self, db_path: str | Path = "taskpulse.sqlite3", *, timeout: float = 5.0) -> None:
        super().__init__(db_path, timeout=timeout)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except PersistenceError:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    # ---- low-level helpers ----

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(USERS_DDL)
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'To Do',
                    priority TEXT NOT NULL DEFAULT 'No Priority',
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    assigned_to TEXT,
                    due_at REAL,
                    started_at REAL,
                    estimated_minutes INTEGER,
                    completed_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            self._add_missing_columns(
                cur,
                "tasks",
                [
                    ("assigned_to", "TEXT"),
                    ("started_at", "REAL"),
                    ("estimated_minutes", "INTEGER"),
                    ("completed_at", "REAL"),
                ],
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS timer_resolutions (
                    task_id INTEGER NOT NULL,
                    cycle TEXT NOT NULL,
                    resolution TEXT NOT NULL,
                    resolved_by TEXT,
                    resolved_at REAL NOT NULL,
                    PRIMARY KEY (task_id, cycle)
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, due_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, sort_order)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_completed ON tasks(completed_at)")

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            status=TaskStatus.from_db(row["status"]),
            priority=Priority.from_db(row["priority"]),
            order=int(row["sort_order"] or 0),
            assigned_to=row["assigned_to"],
            due_at=float(row["due_at"]) if row["due_at"] is not None else None,
            started_at=float(row["started_at"]) if row["started_at"] is not None else None,
            estimated_minutes=(
                int(row["estimated_minutes"]) if row["estimated_minutes"] is not None else None
            ),
            completed_at=float(row["completed_at"]) if row["completed_at"] is not None else None,
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=str(row["id"]),
            username=str(row["username"] or ""),
            points=int(row["points"] or 0),
            streak=int(row["streak"] or 0),
            last_completion_at=(
                float(row["last_completion_at"]) if row["last_completion_at"] is not None else None
            ),
        )

    def _require_task(self, conn: sqlite3.Connection, task_id: int) -> Task:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
        if row is None:
            raise NotFoundError(f"Task {task_id} not found.")
        return self._row_to_task(row)

    # ---- users ----

    def ensure_user(self, user_id: str, username: str | None = None) -> User:
        """Create the user row if missing (accounts themselves live in the auth layer)."""
        if not user_id or not str(user_id).strip():
            raise ValueError("user_id is required")
        uid = str(user_id).strip()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users(id, username) VALUES (?, ?)",
                (uid, (username or uid).strip().lower()),
            )
            if username:
                conn.execute(
                    "UPDATE users SET username = ? WHERE id = ?", (username.strip().lower(), uid)
                )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (uid,)).fetchone()
            return self._row_to_user(row)

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (str(user_id),)).fetchone()
            return self._row_to_user(row) if row else None

    # ---- tasks: reads ----

    def count_tasks(self) -> int:
        with self._connect() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
            return self._row_to_task(row) if row else None

    def list_active_tasks(self, *, user_id: str | None = None, limit: int = 1000) -> list[Task]:
        """
        Tasks that are not Done, oldest due first.

        With user_id: only tasks the user created or is assigned to.
        """
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    """
                    SELECT * FROM tasks
                    WHERE status != 'Done'
                    ORDER BY COALESCE(due_at, created_at) ASC, id ASC
                    LIMIT ?
                    """,
                    (int(limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM tasks
                    WHERE status != 'Done' AND (user_id = ? OR assigned_to = ?)
                    ORDER BY COALESCE(due_at, created_at) ASC, id ASC
                    LIMIT ?
                    """,
                    (str(user_id), str(user_id), int(limit)),
                ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def list_active_page(
        self, *, user_id: str | None = None, after_id: int = 0, limit: int = 500
    ) -> list[Task]:
        """
        Keyset page of active tasks in id order: ids > after_id, at most limit.

        Walking pages until one comes back short visits every active task once.
        """
        where = "status != 'Done' AND id > ?"
        params: list[object] = [int(after_id)]
        if user_id is not None:
            where += " AND (user_id = ? OR assigned_to = ?)"
            params += [str(user_id), str(user_id)]
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE {where} ORDER BY id ASC LIMIT ?", params
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def iter_active_tasks(self, *, user_id: str | None = None, page_size: int = 500) -> Iterator[Task]:
        page_size = max(1, int(page_size))
        after_id = 0
        while True:
            page = self.list_active_page(user_id=user_id, after_id=after_id, limit=page_size)
            yield from page
            if len(page) < page_size:
                return
            after_id = page[-1].id

    def list_tasks_for_user(self, user_id: str) -> list[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? OR assigned_to = ? ORDER BY sort_order ASC, id ASC",
                (str(user_id), str(user_id)),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    # ---- tasks: writes ----

    def add_task(
        self,
        *,
        user_id: str,
        title: str,
        description: str = "",
        priority: Priority = Priority.NONE,
        due_at: float | None = None,
        assigned_to: str | None = None,
        now_ts: float | None = None,
    ) -> Task:
        if not user_id:
            raise ValueError("user_id is required")
        if not title or not title.strip():
            raise ValueError("Title is required")
        if now_ts is None:
            now_ts = time.time()

        with self._transaction() as conn:
            (last,) = conn.execute(
                "SELECT MAX(sort_order) FROM tasks WHERE user_id = ?", (str(user_id),)
            ).fetchone()
            order = 0 if last is None else int(last) + 1
            cur = conn.execute(
                """
                INSERT INTO tasks(
                    user_id, title, description, status, priority, sort_order,
                    assigned_to, due_at, created_at, updated_at
                )
                VALUES (?, ?, ?, 'To Do', ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(user_id),
                    title.strip(),
                    description or "",
                    priority.value,
                    order,
                    assigned_to or None,
                    float(due_at) if due_at is not None else None,
                    float(now_ts),
                    float(now_ts),
                ),
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for tasks insert")
            task = self._require_task(conn, int(rowid))

        logger.debug("Task added id=%s user=%s due_at=%s", task.id, user_id, due_at)
        return task

    def start_task(
        self, task_id: int, *, estimated_minutes: int | None, now_ts: float | None = None
    ) -> Task | None:
        """
        To Do -> In Progress.

        With an estimate the timer starts now (started_at + estimated_minutes set
        together). Returns None when the task was not in To Do.
        """
        if estimated_minutes is not None and int(estimated_minutes) <= 0:
            raise ValueError("estimated_minutes must be positive")
        if now_ts is None:
            now_ts = time.time()

        started_at = float(now_ts) if estimated_minutes is not None else None
        estimate = int(estimated_minutes) if estimated_minutes is not None else None

        with self._transaction() as conn:
            self._require_task(conn, task_id)
            cur = conn.execute(
                """
                UPDATE tasks
                SET status = 'In Progress', started_at = ?, estimated_minutes = ?,
                    completed_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'To Do'
                """,
                (started_at, estimate, float(now_ts), int(task_id)),
            )
            if cur.rowcount != 1:
                return None
            return self._require_task(conn, task_id)

    def revert_task(
        self,
        task_id: int,
        *,
        resolved_by: str | None = None,
        now_ts: float | None = None,
    ) -> Task | None:
        """
        In Progress -> To Do, clearing the timer.

        If a timer was running its cycle is recorded as resolved in the same
        transaction. Returns None when the task was not In Progress.
        """
        if now_ts is None:
            now_ts = time.time()

        with self._transaction() as conn:
            task = self._require_task(conn, task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                return None
            conn.execute(
                """
                UPDATE tasks
                SET status = 'To Do', started_at = NULL, estimated_minutes = NULL,
                    completed_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (float(now_ts), int(task_id)),
            )
            if task.timer_cycle is not None:
                self._insert_resolution(conn, task.id, task.timer_cycle, "reverted", resolved_by, now_ts)
            return self._require_task(conn, task_id)

    def reopen_task(self, task_id: int, *, now_ts: float | None = None) -> Task | None:
        """
        Done -> To Do for plain task editing; clears completed_at.

        Points already awarded stay awarded. Returns None when the task was not Done.
        """
        if now_ts is None:
            now_ts = time.time()
        with self._transaction() as conn:
            self._require_task(conn, task_id)
            cur = conn.execute(
                """
                UPDATE tasks
                SET status = 'To Do', completed_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'Done'
                """,
                (float(now_ts), int(task_id)),
            )
            if cur.rowcount != 1:
                return None
            return self._require_task(conn, task_id)

    def complete_task(
        self,
        task_id: int,
        *,
        user_id: str,
        now_ts: float | None = None,
        tz: tzinfo | None = None,
    ) -> CompletionResult | None:
        """
        Move a task to Done and award points to user_id, as one transaction.

        Returns None (and changes nothing) when the task is already Done, so a
        repeated completion can never award points twice.
        """
        if now_ts is None:
            now_ts = time.time()

        with self._transaction() as conn:
            task = self._require_task(conn, task_id)
            if task.status == TaskStatus.DONE:
                return None

            row = conn.execute("SELECT * FROM users WHERE id = ?", (str(user_id),)).fetchone()
            if row is None:
                raise NotFoundError(f"User {user_id} not found.")
            user = self._row_to_user(row)

            score = compute_completion(
                points=user.points,
                streak=user.streak,
                last_completion_at=user.last_completion_at,
                due_at=task.due_at,
                now_ts=now_ts,
                tz=tz,
            )

            cur = conn.execute(
                """
                UPDATE tasks
                SET status = 'Done', completed_at = ?, started_at = NULL,
                    estimated_minutes = NULL, updated_at = ?
                WHERE id = ? AND status != 'Done'
                """,
                (float(now_ts), float(now_ts), int(task_id)),
            )
            if cur.rowcount != 1:
                return None
            conn.execute(
                """
                UPDATE users
                SET points = ?, streak = ?, last_completion_at = ?
                WHERE id = ?
                """,
                (score.points, score.streak, float(now_ts), user.id),
            )
            if task.timer_cycle is not None:
                self._insert_resolution(conn, task.id, task.timer_cycle, "done", user_id, now_ts)

            done_task = self._require_task(conn, task_id)
            updated_user = self._row_to_user(
                conn.execute("SELECT * FROM users WHERE id = ?", (user.id,)).fetchone()
            )

        logger.info(
            "Task %s completed by %s: +%s points (streak=%s, on_time=%s)",
            task_id,
            user_id,
            score.points_awarded,
            score.streak,
            score.on_time,
        )
        return CompletionResult(
            task=done_task,
            user=updated_user,
            points_awarded=score.points_awarded,
            on_time=score.on_time,
        )

    # ---- timer resolutions ----

    @staticmethod
    def _insert_resolution(
        conn: sqlite3.Connection,
        task_id: int,
        cycle: str,
        resolution: str,
        resolved_by: str | None,
        now_ts: float,
    ) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO timer_resolutions(task_id, cycle, resolution, resolved_by, resolved_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (int(task_id), cycle, resolution, resolved_by, float(now_ts)),
        )

    def resolve_timer(
        self,
        task_id: int,
        cycle: str,
        *,
        resolution: str = "dismissed",
        resolved_by: str | None = None,
        now_ts: float | None = None,
    ) -> None:
        if now_ts is None:
            now_ts = time.time()
        with self._connect() as conn:
            self._insert_resolution(conn, task_id, cycle, resolution, resolved_by, now_ts)

    def resolved_cycles(self, task_ids: Iterable[int]) -> set[tuple[int, str]]:
        ids = [int(t) for t in task_ids]
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT task_id, cycle FROM timer_resolutions WHERE task_id IN ({placeholders})",
                ids,
            ).fetchall()
            return {(int(r["task_id"]), str(r["cycle"])) for r in rows}
