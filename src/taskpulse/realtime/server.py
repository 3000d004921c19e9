# src/taskpulse/realtime/server.py

"""
Realtime server: newline-delimited JSON over asyncio TCP streams.

Client -> server:  {"op": "sendMessage", "id": 7, "data": {...}}
Server -> client:  {"event": "reply", "id": 7, "ok": true, "data": ...}
                   {"event": "receiveMessage" | "chatNotification" | "friendRequest"
                             | "tasksUpdated" | "taskAlert" | "confirmationRequest"
                             | "confirmationCleared", "data": ...}

Every connection must `authenticate` (once, with the identity the auth layer
verified) before any other op except `ping`. Requests on one connection are
handled in order; connections are independent.

On authenticate the user is registered in the presence registry and a
reconcile pass for that user runs in the background, which re-raises any
confirmation prompt still pending from before the reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.errors import TaskPulseError, friendly_error_message
from ..core.state import AppState
from ..social import social_api
from .session import ClientSession

logger = logging.getLogger(__name__)

MAX_FRAME_BYTES = 64 * 1024

OpHandler = Callable[["RealtimeServer", ClientSession, dict[str, Any]], Awaitable[Any]]

_ops: dict[str, OpHandler] = {}
_public_ops: set[str] = set()


def op(name: str, *, public: bool = False) -> Callable[[OpHandler], OpHandler]:
    def deco(fn: OpHandler) -> OpHandler:
        _ops[name] = fn
        if public:
            _public_ops.add(name)
        return fn

    return deco


class RequestError(TaskPulseError, ValueError):
    """Malformed request (bad JSON, unknown op, missing field)."""


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RequestError(f"'{key}' is required.")
    return value


def _opt_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise RequestError(f"'{key}' must be an integer.") from e


def _opt_float(data: dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise RequestError(f"'{key}' must be a number (UNIX seconds).") from e


class RealtimeServer:
    def __init__(self, state: AppState) -> None:
        self.state = state
        settings = state.settings
        self._bucket_seconds = float(getattr(settings, "alert_bucket_seconds", 30.0))
        self._sessions: set[ClientSession] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._server: asyncio.Server | None = None

    @property
    def sessions(self) -> list[ClientSession]:
        return list(self._sessions)

    # ---- lifecycle ----

    async def start(self, host: str | None = None, port: int | None = None) -> asyncio.Server:
        settings = self.state.settings
        host = host if host is not None else getattr(settings, "host", "127.0.0.1")
        port = port if port is not None else int(getattr(settings, "port", 5000))
        self._server = await asyncio.start_server(
            self.handle_connection, host, port, limit=MAX_FRAME_BYTES
        )
        sockets = self._server.sockets or []
        logger.info("Realtime server listening on %s", ", ".join(str(s.getsockname()) for s in sockets))
        return self._server

    @property
    def port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return int(self._server.sockets[0].getsockname()[1])

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        # Sessions first: wait_closed() also waits for open connections.
        for session in list(self._sessions):
            await session.close()
        for task in list(self._background):
            task.cancel()
        if server is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(server.wait_closed(), timeout=5.0)
        logger.info("Realtime server stopped.")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---- per connection ----

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        session = ClientSession(writer, bucket_seconds=self._bucket_seconds)
        self._sessions.add(session)
        logger.info("Connection %s from %s", session.session_id, session.peer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Frame longer than the stream limit.
                    await session.send_event("error", {"error": "Frame too large."})
                    break
                except (ConnectionError, OSError):
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                await self._handle_line(session, line)
        finally:
            self._disconnect(session)
            await session.close()

    def _disconnect(self, session: ClientSession) -> None:
        self._sessions.discard(session)
        self.state.rooms.leave_all(session)
        self.state.presence.unregister(session)
        logger.info("Disconnected %s (user=%s)", session.session_id, session.user_id)

    async def _handle_line(self, session: ClientSession, line: bytes) -> None:
        request_id: Any = None
        try:
            try:
                frame = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise RequestError("Invalid JSON frame.") from e
            if not isinstance(frame, dict):
                raise RequestError("Frame must be a JSON object.")

            request_id = frame.get("id")
            name = str(frame.get("op") or "")
            data = frame.get("data")
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise RequestError("'data' must be an object.")

            handler = _ops.get(name)
            if handler is None:
                raise RequestError(f"Unknown op: {name!r}.")
            if name not in _public_ops and session.user_id is None:
                raise RequestError("Authenticate first.")

            result = await handler(self, session, data)
        except TaskPulseError as e:
            logger.info("Op failed on %s: %s", session.session_id, e)
            await session.reply(request_id, ok=False, error=friendly_error_message(e))
            return
        except ValueError as e:
            await session.reply(request_id, ok=False, error=friendly_error_message(e))
            return
        except Exception as e:
            logger.exception("Op crashed on %s", session.session_id)
            await session.reply(request_id, ok=False, error=friendly_error_message(e))
            return

        await session.reply(request_id, ok=True, data=result)

    # ---- ops: connection ----

    @op("ping", public=True)
    async def _op_ping(self, session: ClientSession, data: dict[str, Any]) -> Any:
        return {"pong": True, "user": session.user_id}

    @op("authenticate", public=True)
    async def _op_authenticate(self, session: ClientSession, data: dict[str, Any]) -> Any:
        user_id = str(_require(data, "userId")).strip()
        username = data.get("username")
        user = await asyncio.to_thread(
            self.state.task_store.ensure_user, user_id, str(username) if username else None
        )
        if session.user_id and session.user_id != user_id:
            # Same socket switching identity: start from a clean slate.
            self.state.presence.unregister(session)
            self.state.rooms.leave_all(session)
            session.reset_for_identity()
        session.user_id = user_id
        self.state.presence.register(user_id, session)
        self._spawn(self.state.reconciler.reconcile_user(user_id))
        return user.to_payload()

    @op("joinRoom")
    async def _op_join_room(self, session: ClientSession, data: dict[str, Any]) -> Any:
        room = str(_require(data, "room"))
        self.state.rooms.join(room, session)
        return {"room": room}

    @op("leaveRoom")
    async def _op_leave_room(self, session: ClientSession, data: dict[str, Any]) -> Any:
        room = str(_require(data, "room"))
        self.state.rooms.leave(room, session)
        return {"room": room}

    # ---- ops: chat & social ----

    @op("sendMessage")
    async def _op_send_message(self, session: ClientSession, data: dict[str, Any]) -> Any:
        from_user = str(data.get("fromUser") or session.user_id)
        if from_user != session.user_id:
            raise RequestError("fromUser must be the authenticated user.")
        to_user = str(_require(data, "toUser"))
        content = str(_require(data, "content"))
        room = data.get("roomName") or data.get("room")
        message = await self.state.relay.send_direct_message(
            from_user, to_user, content, room=str(room) if room else None
        )
        return message.to_payload()

    @op("markRead")
    async def _op_mark_read(self, session: ClientSession, data: dict[str, Any]) -> Any:
        peer = str(_require(data, "peerId"))
        await self.state.relay.mark_read(session.user_id or "", peer)
        return {"peerId": peer, "unreadCount": 0}

    @op("chatHistory")
    async def _op_chat_history(self, session: ClientSession, data: dict[str, Any]) -> Any:
        peer = str(_require(data, "peerId"))
        return await social_api.chat_history(self.state, session.user_id or "", peer)

    @op("friendRequest")
    async def _op_friend_request(self, session: ClientSession, data: dict[str, Any]) -> Any:
        to_user = str(_require(data, "toUser"))
        delivered = await social_api.send_friend_request(self.state, session.user_id or "", to_user)
        return {"toUser": to_user, "delivered": delivered}

    @op("acceptFriend")
    async def _op_accept_friend(self, session: ClientSession, data: dict[str, Any]) -> Any:
        requester = str(_require(data, "userId"))
        await social_api.accept_friend_request(self.state, session.user_id or "", requester)
        return {"userId": requester, "status": "accepted"}

    @op("friends")
    async def _op_friends(self, session: ClientSession, data: dict[str, Any]) -> Any:
        return await social_api.list_friends(self.state, session.user_id or "")

    @op("searchUsers")
    async def _op_search_users(self, session: ClientSession, data: dict[str, Any]) -> Any:
        return await social_api.search_users(self.state, session.user_id or "", str(data.get("query") or ""))

    @op("friendProgress")
    async def _op_friend_progress(self, session: ClientSession, data: dict[str, Any]) -> Any:
        return await social_api.friend_progress(self.state, session.user_id or "")

    @op("leaderboard")
    async def _op_leaderboard(self, session: ClientSession, data: dict[str, Any]) -> Any:
        return await social_api.leaderboard(self.state)

    # ---- ops: tasks ----

    @op("tasks")
    async def _op_tasks(self, session: ClientSession, data: dict[str, Any]) -> Any:
        tasks = await asyncio.to_thread(self.state.task_store.list_tasks_for_user, session.user_id or "")
        return [t.to_payload() for t in tasks]

    @op("createTask")
    async def _op_create_task(self, session: ClientSession, data: dict[str, Any]) -> Any:
        task = await self.state.lifecycle.create_task(
            session.user_id or "",
            title=str(_require(data, "title")),
            description=str(data.get("description") or ""),
            priority=data.get("priority"),
            due_at=_opt_float(data, "dueDate"),
            assigned_to=str(data["assignedTo"]) if data.get("assignedTo") else None,
        )
        return task.to_payload()

    @op("startTask")
    async def _op_start_task(self, session: ClientSession, data: dict[str, Any]) -> Any:
        task = await self.state.lifecycle.start_task(
            int(_require(data, "taskId")),
            user_id=session.user_id or "",
            estimated_minutes=_opt_int(data, "estimatedMinutes"),
        )
        return task.to_payload()

    @op("completeTask")
    async def _op_complete_task(self, session: ClientSession, data: dict[str, Any]) -> Any:
        result = await self.state.lifecycle.complete_task(
            int(_require(data, "taskId")), user_id=session.user_id or ""
        )
        if result is None:
            return {"alreadyDone": True}
        return {
            "task": result.task.to_payload(),
            "user": result.user.to_payload(),
            "pointsAwarded": result.points_awarded,
            "onTime": result.on_time,
        }

    @op("revertTask")
    async def _op_revert_task(self, session: ClientSession, data: dict[str, Any]) -> Any:
        task = await self.state.lifecycle.revert_task(
            int(_require(data, "taskId")), user_id=session.user_id or ""
        )
        return task.to_payload()

    @op("dismissConfirmation")
    async def _op_dismiss(self, session: ClientSession, data: dict[str, Any]) -> Any:
        task_id = int(_require(data, "taskId"))
        await self.state.lifecycle.dismiss_confirmation(task_id, user_id=session.user_id or "")
        return {"taskId": task_id}

    @op("setStatus")
    async def _op_set_status(self, session: ClientSession, data: dict[str, Any]) -> Any:
        task = await self.state.lifecycle.set_status(
            int(_require(data, "taskId")),
            str(_require(data, "status")),
            user_id=session.user_id or "",
            estimated_minutes=_opt_int(data, "estimatedMinutes"),
        )
        return task.to_payload()


async def serve_forever(state: AppState, stop_event: asyncio.Event) -> None:
    """Run server + reconciler until stop_event is set."""
    server = RealtimeServer(state)
    await server.start()
    interval = float(getattr(state.settings, "reconcile_interval_seconds", 30.0))
    reconciler_task = asyncio.create_task(state.reconciler.run(interval_seconds=interval))
    try:
        await stop_event.wait()
    finally:
        reconciler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconciler_task
        await server.stop()
