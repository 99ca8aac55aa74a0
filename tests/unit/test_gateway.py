"""Unit tests for the channel gateway (control message demux and event fan-out)."""

import asyncio
import json

import pytest

from dispatchhub.api.gateway import ChannelGateway
from dispatchhub.core.models import EventType, SessionStatus, SessionType

KEY = "s3cret"


class Client:
    """Collects frames sent to one connection."""

    def __init__(self, gateway: ChannelGateway) -> None:
        self.gateway = gateway
        self.frames: list[dict] = []
        self.conn = gateway.connect(self._send)

    async def _send(self, payload: dict) -> None:
        self.frames.append(payload)

    async def request(self, message: dict) -> dict:
        return await self.gateway.handle_message(self.conn, json.dumps(message))

    async def auth(self) -> dict:
        return await self.request({"type": "auth", "id": "auth", "key": KEY})

    def events(self, session_id: str) -> list[dict]:
        return [f["event"] for f in self.frames if f["type"] == "session.event" and f["sessionId"] == session_id]

    async def wait_event(self, session_id: str, event_type: str, timeout: float = 1.0) -> dict:
        async def _poll():
            while True:
                for event in self.events(session_id):
                    if event["type"] == event_type:
                        return event
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def gateway(registry):
    return ChannelGateway(registry, KEY)


@pytest.mark.unit
async def test_operations_before_auth_are_rejected_without_side_effects(gateway, registry, fake_adapters):
    client = Client(gateway)

    reply = await client.request({"type": "create-session", "id": 1, "sessionType": "terminal"})

    assert reply == {"type": "reply", "id": 1, "ok": False, "error": reply["error"]}
    assert reply["error"]["kind"] == "Unauthenticated"
    assert registry.list_sessions() == []
    assert fake_adapters[SessionType.TERMINAL].handles == []


@pytest.mark.unit
async def test_malformed_before_auth_is_still_unauthenticated(gateway):
    client = Client(gateway)

    reply = await client.request({"type": "session.input", "id": 2})

    assert reply["error"]["kind"] == "Unauthenticated"


@pytest.mark.unit
async def test_auth_succeeds_once(gateway):
    client = Client(gateway)

    bad = await client.request({"type": "auth", "id": 1, "key": "wrong"})
    good = await client.auth()
    again = await client.auth()

    assert bad["error"]["kind"] == "Unauthenticated"
    assert good["ok"] is True
    assert again["error"]["kind"] == "BadRequest"
    assert client.conn.authenticated


@pytest.mark.unit
async def test_empty_key_never_authenticates(registry):
    client = Client(ChannelGateway(registry, ""))

    reply = await client.request({"type": "auth", "id": 1, "key": ""})

    assert reply["ok"] is False


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "expected_id"),
    [
        ("{not json", None),
        ("[1, 2]", None),
        (json.dumps({"type": "session.teleport", "id": 7}), 7),
        (json.dumps({"type": "session.resize", "id": 8, "sessionId": "x", "cols": 0, "rows": 10}), 8),
        (json.dumps({"type": "create-session", "id": 9}), 9),
    ],
)
async def test_bad_messages_get_bad_request(gateway, raw, expected_id):
    client = Client(gateway)
    await client.auth()

    reply = await gateway.handle_message(client.conn, raw)

    assert reply["ok"] is False
    assert reply["id"] == expected_id
    assert reply["error"]["kind"] == "BadRequest"


@pytest.mark.unit
async def test_create_replies_before_first_event(gateway):
    client = Client(gateway)
    await client.auth()

    reply = await client.request({"type": "create-session", "id": "c1", "sessionType": "terminal"})
    session_id = reply["data"]["sessionId"]
    first = await client.wait_event(session_id, EventType.STATUS.value)

    reply_index = client.frames.index(reply)
    event_index = next(i for i, f in enumerate(client.frames) if f["type"] == "session.event")
    assert reply_index < event_index
    assert first["seq"] == 1
    assert first["payload"] == {"status": "running"}


@pytest.mark.unit
async def test_unknown_session_type_is_bad_request(gateway):
    client = Client(gateway)
    await client.auth()

    reply = await client.request({"type": "create-session", "id": 1, "sessionType": "hologram"})

    assert reply["error"]["kind"] == "BadRequest"


@pytest.mark.unit
async def test_input_resize_interrupt_reach_backend(gateway, fake_adapters):
    client = Client(gateway)
    await client.auth()
    created = await client.request({"type": "create-session", "id": 1, "sessionType": "terminal"})
    session_id = created["data"]["sessionId"]
    handle = fake_adapters[SessionType.TERMINAL].last

    assert (await client.request({"type": "session.input", "id": 2, "sessionId": session_id, "data": "pwd\n"}))["ok"]
    assert (await client.request({"type": "session.resize", "id": 3, "sessionId": session_id, "cols": 90, "rows": 20}))[
        "ok"
    ]
    assert (await client.request({"type": "session.interrupt", "id": 4, "sessionId": session_id}))["ok"]

    assert handle.writes == ["pwd\n"]
    assert handle.sizes == [(90, 20)]
    assert handle.interrupt_control.count == 1
    echoed = await client.wait_event(session_id, EventType.INPUT.value)
    assert echoed["payload"] == {"data": "pwd\n"}


@pytest.mark.unit
async def test_interrupt_without_capability_is_bad_request(gateway):
    client = Client(gateway)
    await client.auth()
    created = await client.request({"type": "create-session", "id": 1, "sessionType": "ai-agent"})

    reply = await client.request({"type": "session.interrupt", "id": 2, "sessionId": created["data"]["sessionId"]})

    assert reply["error"]["kind"] == "BadRequest"


@pytest.mark.unit
async def test_operations_on_unknown_session_are_not_found(gateway):
    client = Client(gateway)
    await client.auth()

    for message in (
        {"type": "session.input", "id": 1, "sessionId": "ghost", "data": "x"},
        {"type": "session.status", "id": 2, "sessionId": "ghost"},
        {"type": "session.subscribe", "id": 3, "sessionId": "ghost"},
        {"type": "session.close", "id": 4, "sessionId": "ghost"},
    ):
        reply = await client.request(message)
        assert reply["error"]["kind"] == "NotFound", message


@pytest.mark.unit
async def test_close_delivers_terminal_event_and_status(gateway, registry):
    client = Client(gateway)
    await client.auth()
    created = await client.request({"type": "create-session", "id": 1, "sessionType": "terminal"})
    session_id = created["data"]["sessionId"]

    closed = await client.request({"type": "session.close", "id": 2, "sessionId": session_id})
    event = await client.wait_event(session_id, EventType.CLOSED.value)
    status = await client.request({"type": "session.status", "id": 3, "sessionId": session_id})
    late_input = await client.request({"type": "session.input", "id": 4, "sessionId": session_id, "data": "x"})

    assert closed["data"] == {"status": "closed"}
    assert event["payload"] == {"reason": "closed"}
    assert status["data"]["status"] == "closed"
    assert late_input["error"]["kind"] == "BackendUnavailable"


@pytest.mark.unit
async def test_events_go_only_to_subscribers(gateway, fake_adapters):
    owner = Client(gateway)
    watcher = Client(gateway)
    bystander = Client(gateway)
    for client in (owner, watcher, bystander):
        await client.auth()

    created = await owner.request({"type": "create-session", "id": 1, "sessionType": "terminal"})
    session_id = created["data"]["sessionId"]
    assert (await watcher.request({"type": "session.subscribe", "id": 1, "sessionId": session_id}))["ok"]

    fake_adapters[SessionType.TERMINAL].last.push(EventType.OUTPUT, {"data": "hello"})
    await owner.wait_event(session_id, EventType.OUTPUT.value)
    await watcher.wait_event(session_id, EventType.OUTPUT.value)

    assert bystander.events(session_id) == []

    assert (await watcher.request({"type": "session.unsubscribe", "id": 2, "sessionId": session_id}))["ok"]
    fake_adapters[SessionType.TERMINAL].last.push(EventType.OUTPUT, {"data": "second"})

    async def _owner_has_both():
        while len([e for e in owner.events(session_id) if e["type"] == "output"]) < 2:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_owner_has_both(), timeout=1.0)
    assert [e["payload"]["data"] for e in watcher.events(session_id) if e["type"] == "output"] == ["hello"]


@pytest.mark.unit
async def test_history_and_status_replies(gateway):
    client = Client(gateway)
    await client.auth()
    created = await client.request(
        {"type": "create-session", "id": 1, "sessionType": "file-editor", "options": {"path": "a.txt"}}
    )
    session_id = created["data"]["sessionId"]
    await client.request({"type": "session.input", "id": 2, "sessionId": session_id, "data": {"op": "reload"}})

    history = await client.request({"type": "session.history", "id": 3, "sessionId": session_id, "n": 10})
    status = await client.request({"type": "session.status", "id": 4, "sessionId": session_id})

    records = history["data"]["records"]
    assert [r["seq"] for r in records] == sorted(r["seq"] for r in records)
    assert history["data"]["summary"]["byRole"]["user"] == 1
    assert status["data"]["sessionType"] == "file-editor"
    assert status["data"]["status"] == "running"


@pytest.mark.unit
async def test_history_after_seq_over_the_socket(gateway):
    client = Client(gateway)
    await client.auth()
    created = await client.request({"type": "create-session", "id": 1, "sessionType": "terminal"})
    session_id = created["data"]["sessionId"]
    await client.request({"type": "session.input", "id": 2, "sessionId": session_id, "data": "ls\n"})

    full = await client.request({"type": "session.history", "id": 3, "sessionId": session_id, "tail": False})
    last = full["data"]["records"][-1]["seq"]
    resumed = await client.request(
        {"type": "session.history", "id": 4, "sessionId": session_id, "afterSeq": last - 1}
    )
    bad = await client.request({"type": "session.history", "id": 5, "sessionId": session_id, "afterSeq": -3})

    assert [r["seq"] for r in resumed["data"]["records"]] == [last]
    assert bad["error"]["kind"] == "BadRequest"
@pytest.mark.unit
async def test_history_rejects_unsafe_id(gateway):
    client = Client(gateway)
    await client.auth()

    reply = await client.request({"type": "session.history", "id": 1, "sessionId": "../../etc/passwd"})

    assert reply["error"]["kind"] == "BadRequest"


@pytest.mark.unit
async def test_disconnect_keeps_sessions_running(gateway, registry):
    client = Client(gateway)
    await client.auth()
    created = await client.request({"type": "create-session", "id": 1, "sessionType": "terminal"})
    session_id = created["data"]["sessionId"]

    await gateway.disconnect(client.conn)

    assert registry.get_session(session_id).session.status == SessionStatus.RUNNING
    assert gateway.connection_count == 0
    assert registry.get_session(session_id).channel.subscriber_count() == 0
