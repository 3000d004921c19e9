# src/taskpulse/connectors/matrix_push.py

from __future__ import annotations

import logging

from nio import AsyncClient, RoomSendError

logger = logging.getLogger(__name__)


class MatrixPushMessenger:
    """
    OutboundMessenger that posts alerts for offline users into one Matrix room.

    The recipient is named in the message body, since TaskPulse user ids are
    not Matrix ids.
    """

    def __init__(self, client: AsyncClient, room_id: str) -> None:
        self._client = client
        self._room_id = room_id

    @property
    def room_id(self) -> str:
        return self._room_id

    async def send_text(
        self,
        *,
        text: str,
        room_id: str | None = None,
        to_user_id: str | None = None,
    ) -> None:
        target = (room_id or self._room_id).strip()
        if not target:
            logger.warning("Matrix push skipped: no room configured.")
            return
        body = f"[{to_user_id}] {text}" if to_user_id else text
        resp = await self._client.room_send(
            room_id=target,
            message_type="m.room.message",
            content={"msgtype": "m.text", "body": body},
            ignore_unverified_devices=True,
        )
        if isinstance(resp, RoomSendError):
            raise RuntimeError(f"Matrix send failed: {resp.message}")
        logger.debug("Matrix push sent to %s for %s", target, to_user_id)

    async def close(self) -> None:
        await self._client.close()


async def start_matrix_push(settings) -> MatrixPushMessenger | None:
    """Log in and return a messenger, or None when Matrix is off or misconfigured."""
    if not getattr(settings, "matrix_enabled", False):
        return None
    room = (getattr(settings, "matrix_room", "") or "").strip()
    if not room:
        logger.error("Matrix push is enabled but TASKPULSE_MATRIX_ROOM is not set.")
        return None

    from .matrix_client import create_matrix_client

    client = await create_matrix_client(settings)
    if client is None:
        logger.error("Matrix client creation failed; offline push disabled.")
        return None
    logger.info("Matrix push ready (user=%s, room=%s).", client.user_id, room)
    return MatrixPushMessenger(client, room)
