"""
Unit tests for the client channel manager.
Uses a fake transport whose sockets are fed from asyncio queues.
"""
import asyncio

import pytest

from rapidfire import protocol
from rapidfire.client.connection import ConnectionManager, ConnectionStatus, EventDispatcher, WebSocketTransport
from rapidfire.errors import TransportError


class FakeSocket:
    def __init__(self):
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send_json(self, payload):
        if self.closed:
            raise TransportError("closed")
        self.sent.append(payload)

    async def frames(self):
        while True:
            item = await self.incoming.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, message_type, data=None):
        self.incoming.put_nowait(protocol.frame(message_type, data))

    def drop(self):
        self.incoming.put_nowait(None)


class FakeTransport:
    def __init__(self, failures=0):
        self.failures = failures
        self.opened: list[FakeSocket] = []
        self.attempts = 0

    async def open(self, session_id, auth_token):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise TransportError("refused")
        socket = FakeSocket()
        self.opened.append(socket)
        return socket


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def settle_loop(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_manager(transport, statuses=None):
    sleep = FakeSleep()
    on_status = (lambda status, attempt: statuses.append(status)) if statuses is not None else None
    return ConnectionManager(transport, sleep=sleep, on_status=on_status), sleep


def joins(socket):
    return [m for m in socket.sent if m["type"] == protocol.JOIN_SESSION]


def test_backoff_is_exponential_and_capped():
    manager = ConnectionManager(FakeTransport())
    assert [manager.backoff_delay(n) for n in range(1, 7)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]


def test_channel_url_uses_websocket_scheme():
    assert WebSocketTransport("http://localhost:8000/").channel_url("abc") == "ws://localhost:8000/ws/rapidfire/abc"
    assert WebSocketTransport("https://quiz.example").channel_url("x") == "wss://quiz.example/ws/rapidfire/x"


async def test_connect_sends_exactly_one_join():
    statuses = []
    transport = FakeTransport()
    manager, sleep = make_manager(transport, statuses)
    await manager.connect("s1", "tok", {})
    assert manager.status == ConnectionStatus.CONNECTED
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert joins(transport.opened[0]) == [protocol.frame(protocol.JOIN_SESSION, {"session_id": "s1"})]
    assert sleep.delays == []
    await manager.disconnect()


async def test_events_reach_handlers():
    received = []

    async def on_progress(data):
        received.append(("progress", data))

    transport = FakeTransport()
    manager, _ = make_manager(transport)
    await manager.connect("s1", "tok", {protocol.SESSION_STATE: received.append, protocol.OPPONENT_PROGRESS: on_progress})
    socket = transport.opened[0]
    socket.push(protocol.SESSION_STATE, {"session_id": "s1"})
    socket.push(protocol.OPPONENT_PROGRESS, {"user_id": 2})
    socket.push("somethingNew", {})
    await settle_loop()
    assert received == [{"session_id": "s1"}, ("progress", {"user_id": 2})]
    await manager.disconnect()


async def test_initial_failure_retries_with_backoff():
    statuses = []
    transport = FakeTransport(failures=2)
    manager, sleep = make_manager(transport, statuses)
    await manager.connect("s1", "tok", {})
    assert manager.status == ConnectionStatus.CONNECTED
    assert manager.attempt == 0
    assert sleep.delays == [0.5, 1.0]
    assert statuses.count(ConnectionStatus.RECONNECTING) == 2
    await manager.disconnect()


async def test_gives_up_after_max_attempts():
    statuses = []
    transport = FakeTransport(failures=100)
    manager, sleep = make_manager(transport, statuses)
    with pytest.raises(TransportError):
        await manager.connect("s1", "tok", {})
    assert manager.status == ConnectionStatus.FAILED
    assert statuses[-1] == ConnectionStatus.FAILED
    assert sleep.delays == [0.5, 1.0, 2.0, 4.0, 8.0]
    assert transport.attempts == 6


async def test_dropped_stream_reconnects_with_one_join():
    received = []
    transport = FakeTransport()
    manager, sleep = make_manager(transport)
    await manager.connect("s1", "tok", {protocol.SESSION_STATE: received.append})
    first = transport.opened[0]

    first.drop()
    await settle_loop()
    assert len(transport.opened) == 2
    assert manager.status == ConnectionStatus.CONNECTED
    assert sleep.delays == [0.5]
    second = transport.opened[1]
    assert len(joins(second)) == 1
    assert first.closed is True

    second.push(protocol.SESSION_STATE, {"n": 1})
    await settle_loop()
    assert received == [{"n": 1}]
    await manager.disconnect()


async def test_transport_error_in_stream_reconnects():
    transport = FakeTransport()
    manager, _ = make_manager(transport)
    await manager.connect("s1", "tok", {})
    transport.opened[0].incoming.put_nowait(TransportError("reset by peer"))
    await settle_loop()
    assert len(transport.opened) == 2
    await manager.disconnect()


async def test_disconnect_closes_and_blocks_sends():
    transport = FakeTransport()
    manager, _ = make_manager(transport)
    channel = await manager.connect("s1", "tok", {protocol.PONG: lambda data: None})
    await manager.send(protocol.PING)
    await manager.disconnect()
    assert manager.status == ConnectionStatus.DISCONNECTED
    assert transport.opened[0].closed is True
    assert len(channel.dispatcher) == 0
    with pytest.raises(TransportError):
        await manager.send(protocol.PING)
    await settle_loop()
    assert len(transport.opened) == 1


async def test_connecting_to_new_session_replaces_channel():
    transport = FakeTransport()
    manager, _ = make_manager(transport)
    await manager.connect("s1", "tok", {})
    await manager.connect("s2", "tok", {})
    assert transport.opened[0].closed is True
    assert manager.channel.session_id == "s2"
    await settle_loop()
    assert len(transport.opened) == 2
    await manager.disconnect()


async def test_dispatcher_reports_unhandled_events():
    dispatcher = EventDispatcher({"a": lambda data: None})
    assert await dispatcher.dispatch({"type": "a", "data": {}}) is True
    assert await dispatcher.dispatch({"type": "b"}) is False
    dispatcher.clear()
    assert await dispatcher.dispatch({"type": "a"}) is False
