# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskpulse.cli.bootstrap import create_initial_state
from taskpulse.core.state import AppState


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and core modules.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskpulse-test",
        host="127.0.0.1",
        port=0,
        # Paths (tmp per test run)
        data_dir=tmp_path,
        db_path=tmp_path / "taskpulse.sqlite3",
        db_timeout_seconds=2.0,
        # Reconciler
        reconcile_interval_seconds=30.0,
        reconcile_batch_size=500,
        alert_bucket_seconds=30.0,
        timer_reminder_every_buckets=10,
        confirmation_window_minutes=24 * 60,
        # UTC keeps calendar-day math independent of the machine running the tests.
        timezone="UTC",
        leaderboard_limit=10,
        # Connectors
        console_enabled=False,
        matrix_enabled=False,
        matrix_room="",
        matrix_store_path=tmp_path / "matrix_store",
    )


@pytest.fixture()
def state(settings: SimpleNamespace) -> AppState:
    """
    AppState wired exactly like the CLI does it.

    NOTE: We keep real SQLite stores here because their correctness is part
    of what we want to test.
    """
    return create_initial_state(settings=settings)
