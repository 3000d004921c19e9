# src/taskpulse/realtime/session.py

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

from ..tasks.alerts import AlertCache

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


def encode_frame(frame: dict[str, Any]) -> bytes:
    """One JSON object per line."""
    return (json.dumps(frame, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class ClientSession:
    """
    Connection handle for one TCP client.

    Owns the per-connection alert cache and the set of confirmation prompts
    currently outstanding on this connection; both are discarded with it.

    Writes are serialized with an asyncio.Lock and bounded by write_timeout.
    A failed write marks the session closed and is reported as False, never
    raised: delivered data is already durable or will be recomputed.
    """

    def __init__(
        self,
        writer: asyncio.StreamWriter,
        *,
        bucket_seconds: float = 30.0,
        write_timeout: float = 5.0,
    ) -> None:
        self.session_id = f"s{next(_session_ids)}"
        self.user_id: str | None = None
        self.alert_cache = AlertCache(bucket_seconds)
        self.pending_confirmations: set[int] = set()

        self._bucket_seconds = float(bucket_seconds)
        self._writer = writer
        self._write_timeout = float(write_timeout)
        self._write_lock = asyncio.Lock()
        self._closed = False

    def reset_for_identity(self) -> None:
        """Forget alert and prompt state tied to the previous user of this socket."""
        self.alert_cache = AlertCache(self._bucket_seconds)
        self.pending_confirmations = set()

    def __repr__(self) -> str:
        return f"<ClientSession {self.session_id} user={self.user_id}>"

    @property
    def closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    @property
    def peer(self) -> str:
        try:
            return str(self._writer.get_extra_info("peername"))
        except Exception:
            return "?"

    async def send_frame(self, frame: dict[str, Any]) -> bool:
        if self.closed:
            return False
        data = encode_frame(frame)
        try:
            async with self._write_lock:
                self._writer.write(data)
                await asyncio.wait_for(self._writer.drain(), timeout=self._write_timeout)
            return True
        except (ConnectionError, OSError, asyncio.TimeoutError, RuntimeError):
            self._closed = True
            logger.debug("Write to %s failed; dropping frame.", self.session_id, exc_info=True)
            return False

    async def send_event(self, event: str, data: Any = None) -> bool:
        return await self.send_frame({"event": event, "data": data})

    async def reply(
        self,
        request_id: Any,
        *,
        ok: bool,
        data: Any = None,
        error: str | None = None,
    ) -> bool:
        frame: dict[str, Any] = {"event": "reply", "id": request_id, "ok": ok}
        if ok:
            frame["data"] = data
        else:
            frame["error"] = error or "Request failed."
        return await self.send_frame(frame)

    async def close(self) -> None:
        self._closed = True
        try:
            self._writer.close()
            await asyncio.wait_for(self._writer.wait_closed(), timeout=self._write_timeout)
        except (ConnectionError, OSError, asyncio.TimeoutError):
            logger.debug("Close of %s did not finish cleanly.", self.session_id, exc_info=True)
