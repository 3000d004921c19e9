# tests/test_server.py

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from typing import Any

import pytest
import pytest_asyncio

from taskpulse.realtime.server import RealtimeServer


class Client:
    """Tiny line-JSON client: call() returns the matching reply, other frames are kept in events."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.events: list[dict[str, Any]] = []
        self._next_id = 0

    async def send_raw(self, raw: bytes) -> None:
        self.writer.write(raw)
        await self.writer.drain()

    async def read_frame(self) -> dict[str, Any]:
        line = await asyncio.wait_for(self.reader.readline(), timeout=5.0)
        assert line, "connection closed"
        return json.loads(line)

    async def call(self, op: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        self._next_id += 1
        rid = self._next_id
        await self.send_raw((json.dumps({"op": op, "id": rid, "data": data or {}}) + "\n").encode())
        while True:
            frame = await self.read_frame()
            if frame.get("event") == "reply" and frame.get("id") == rid:
                return frame
            self.events.append(frame)

    async def wait_event(self, name: str) -> dict[str, Any]:
        for frame in self.events:
            if frame.get("event") == name:
                self.events.remove(frame)
                return frame
        while True:
            frame = await self.read_frame()
            if frame.get("event") == name:
                return frame
            self.events.append(frame)

    async def close(self) -> None:
        self.writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self.writer.wait_closed()


@pytest_asyncio.fixture()
async def server(state):
    srv = RealtimeServer(state)
    await srv.start(host="127.0.0.1", port=0)
    yield srv
    await srv.stop()


async def _connect(server: RealtimeServer, user_id: str | None = None) -> Client:
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
    client = Client(reader, writer)
    if user_id is not None:
        reply = await client.call("authenticate", {"userId": user_id, "username": user_id.title()})
        assert reply["ok"], reply
    return client


@pytest.mark.asyncio
async def test_ops_require_authentication(server) -> None:
    client = await _connect(server)
    try:
        pong = await client.call("ping")
        assert pong["ok"] and pong["data"]["pong"] is True

        reply = await client.call("tasks")
        assert reply["ok"] is False
        assert "Authenticate" in reply["error"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_bad_frames_get_error_replies(server) -> None:
    client = await _connect(server, "alice")
    try:
        await client.send_raw(b"{not json\n")
        frame = await client.read_frame()
        assert frame["event"] == "reply" and frame["ok"] is False

        reply = await client.call("noSuchOp")
        assert reply["ok"] is False and "Unknown op" in reply["error"]

        reply = await client.call("startTask", {})
        assert reply["ok"] is False and "taskId" in reply["error"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_task_flow_over_the_wire(server, state) -> None:
    client = await _connect(server, "alice")
    try:
        created = await client.call("createTask", {"title": "ship it", "priority": "High"})
        assert created["ok"], created
        task_id = created["data"]["id"]
        await client.wait_event("tasksUpdated")

        started = await client.call("startTask", {"taskId": task_id, "estimatedMinutes": 30})
        assert started["data"]["status"] == "In Progress"
        assert started["data"]["estimatedMinutes"] == 30

        done = await client.call("completeTask", {"taskId": task_id})
        assert done["ok"], done
        assert done["data"]["task"]["status"] == "Done"
        assert done["data"]["task"]["completedAt"] is not None
        assert done["data"]["pointsAwarded"] == 12

        again = await client.call("completeTask", {"taskId": task_id})
        assert again["data"] == {"alreadyDone": True}

        listed = await client.call("tasks")
        assert [t["id"] for t in listed["data"]] == [task_id]

        board = await client.call("leaderboard")
        assert board["data"][0]["id"] == "alice"
        assert board["data"][0]["dailyCompleted"] == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_between_two_clients(server, state) -> None:
    alice = await _connect(server, "alice")
    bob = await _connect(server, "bob")
    try:
        req = await alice.call("friendRequest", {"toUser": "bob"})
        assert req["data"]["delivered"] is True
        note = await bob.wait_event("friendRequest")
        assert note["data"]["fromUser"]["id"] == "alice"

        acc = await bob.call("acceptFriend", {"userId": "alice"})
        assert acc["ok"], acc

        sent = await alice.call("sendMessage", {"toUser": "bob", "content": "hi bob"})
        assert sent["ok"], sent
        chat = await bob.wait_event("chatNotification")
        assert chat["data"]["content"] == "hi bob"

        spoof = await alice.call("sendMessage", {"fromUser": "bob", "toUser": "alice", "content": "x"})
        assert spoof["ok"] is False

        history = await bob.call("chatHistory", {"peerId": "alice"})
        assert [m["content"] for m in history["data"]] == ["hi bob"]

        friends = await alice.call("friends")
        assert [f["user"]["id"] for f in friends["data"]["friends"]] == ["bob"]
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_disconnect_unregisters_presence(server, state) -> None:
    client = await _connect(server, "alice")
    assert state.presence.is_online("alice")
    await client.close()
    for _ in range(50):
        if not state.presence.is_online("alice"):
            break
        await asyncio.sleep(0.02)
    assert not state.presence.is_online("alice")


@pytest.mark.asyncio
async def test_other_users_task_is_forbidden(server) -> None:
    alice = await _connect(server, "alice")
    bob = await _connect(server, "bob")
    try:
        created = await alice.call("createTask", {"title": "private"})
        reply = await bob.call("completeTask", {"taskId": created["data"]["id"]})
        assert reply["ok"] is False
        assert "own or assigned" in reply["error"]
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_switching_identity_starts_with_fresh_alert_state(server, state) -> None:
    client = await _connect(server, "alice")
    try:
        created = await client.call(
            "createTask", {"title": "shared", "dueDate": time.time() - 60, "assignedTo": "bob"}
        )
        task_id = created["data"]["id"]
        await state.reconciler.reconcile_user("alice")
        first = await client.wait_event("taskAlert")
        assert first["data"]["taskId"] == task_id

        reply = await client.call("authenticate", {"userId": "bob", "username": "Bob"})
        assert reply["ok"], reply
        again = await client.wait_event("taskAlert")
        assert again["data"]["taskId"] == task_id
        assert again["data"]["id"] == first["data"]["id"]
        assert not state.presence.is_online("alice")
        assert state.presence.lookup("bob") is not None
    finally:
        await client.close()
