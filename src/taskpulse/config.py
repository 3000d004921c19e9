# src/taskpulse/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time.
- Every persistence / polling knob is tunable without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKPULSE"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Real environment variables win over .env entries.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Server ----
    host: str
    port: int

    # ---- Local data ----
    data_dir: Path
    db_path: Path
    db_timeout_seconds: float

    # ---- Reconciler ----
    reconcile_interval_seconds: float
    reconcile_batch_size: int
    alert_bucket_seconds: float
    timer_reminder_every_buckets: int
    confirmation_window_minutes: int
    timezone: str | None

    # ---- Social ----
    leaderboard_limit: int

    # ---- Connector flags ----
    console_enabled: bool
    matrix_enabled: bool

    # ---- Matrix push ----
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_room: str
    matrix_store_path: Path

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskpulse") or "taskpulse"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        host = _env(_k("HOST"), "127.0.0.1")
        port = _env_int(_k("PORT"), 5000)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskpulse"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "taskpulse.sqlite3")
        # Persistence calls must fail instead of hanging on a locked database.
        db_timeout_seconds = max(0.1, _env_float(_k("DB_TIMEOUT_SECONDS"), 5.0))

        reconcile_interval_seconds = max(0.5, _env_float(_k("RECONCILE_INTERVAL_SECONDS"), 30.0))
        reconcile_batch_size = max(1, _env_int(_k("RECONCILE_BATCH_SIZE"), 500))
        alert_bucket_seconds = max(1.0, _env_float(_k("ALERT_BUCKET_SECONDS"), 30.0))
        timer_reminder_every_buckets = max(1, _env_int(_k("TIMER_REMINDER_EVERY_BUCKETS"), 10))
        confirmation_window_minutes = max(1, _env_int(_k("CONFIRMATION_WINDOW_MINUTES"), 24 * 60))
        timezone = _env(_k("TIMEZONE"), "").strip() or None

        leaderboard_limit = max(1, _env_int(_k("LEADERBOARD_LIMIT"), 10))

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), False)
        matrix_enabled = _env_bool(_k("MATRIX_ENABLED"), False)

        matrix_homeserver = _env(_k("MATRIX_HOMESERVER"), "").strip()
        matrix_user_id = _env(_k("MATRIX_USER_ID"), "").strip()
        matrix_password = _env(_k("MATRIX_PASSWORD"), "").strip()
        matrix_room = _env(_k("MATRIX_ROOM"), "").strip()
        matrix_store_path = _env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            host=host,
            port=port,
            data_dir=data_dir,
            db_path=db_path,
            db_timeout_seconds=db_timeout_seconds,
            reconcile_interval_seconds=reconcile_interval_seconds,
            reconcile_batch_size=reconcile_batch_size,
            alert_bucket_seconds=alert_bucket_seconds,
            timer_reminder_every_buckets=timer_reminder_every_buckets,
            confirmation_window_minutes=confirmation_window_minutes,
            timezone=timezone,
            leaderboard_limit=leaderboard_limit,
            console_enabled=console_enabled,
            matrix_enabled=matrix_enabled,
            matrix_homeserver=matrix_homeserver,
            matrix_user_id=matrix_user_id,
            matrix_password=matrix_password,
            matrix_room=matrix_room,
            matrix_store_path=matrix_store_path,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
