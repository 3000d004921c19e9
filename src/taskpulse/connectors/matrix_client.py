# src/taskpulse/connectors/matrix_client.py

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from nio import AsyncClient, AsyncClientConfig, LoginResponse

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"


@dataclass(frozen=True, slots=True)
class PushSession:
    """Saved login of the push bot, so the password is only needed once."""

    user_id: str
    device_id: str
    access_token: str

    @classmethod
    def load(cls, path: Path) -> PushSession | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text("utf-8"))
            return cls(
                user_id=str(raw["user_id"]),
                device_id=str(raw["device_id"]),
                access_token=str(raw["access_token"]),
            )
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning("Ignoring unreadable %s: %r", path, e)
            return None

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(self)), "utf-8")
        os.replace(tmp, path)
        os.chmod(path, 0o600)


async def create_matrix_client(settings) -> AsyncClient | None:
    """
    Logged-in, unencrypted AsyncClient for pushes into one room, or None.

    Reuses the saved session when there is one; otherwise logs in with the
    password and saves the session under matrix_store_path.
    """
    homeserver = (getattr(settings, "matrix_homeserver", "") or "").strip()
    user_id = (getattr(settings, "matrix_user_id", "") or "").strip()
    password = (getattr(settings, "matrix_password", "") or "").strip()
    session_path = Path(getattr(settings, "matrix_store_path", ".local/taskpulse/matrix_store")) / SESSION_FILE

    if not homeserver or not user_id:
        logger.error("Matrix push needs TASKPULSE_MATRIX_HOMESERVER and TASKPULSE_MATRIX_USER_ID.")
        return None

    client = AsyncClient(
        homeserver,
        user_id,
        config=AsyncClientConfig(encryption_enabled=False, store_sync_tokens=False),
    )

    saved = PushSession.load(session_path)
    if saved is not None:
        client.user_id = saved.user_id
        client.device_id = saved.device_id
        client.access_token = saved.access_token
        logger.info("Matrix push: reusing session of %s", saved.user_id)
        return client

    if not password:
        logger.error("No saved Matrix session; set TASKPULSE_MATRIX_PASSWORD once to log in.")
        await client.close()
        return None

    resp = await client.login(password=password, device_name=f"{getattr(settings, 'app_name', 'taskpulse')} push")
    if not isinstance(resp, LoginResponse):
        logger.error("Matrix login failed: %r", resp)
        await client.close()
        return None

    try:
        PushSession(resp.user_id, resp.device_id, resp.access_token).save(session_path)
    except OSError as e:
        # This run keeps working; the next start logs in again.
        logger.warning("Could not save Matrix session to %s: %r", session_path, e)
    return client
