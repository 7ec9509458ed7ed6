import asyncio

import pytest

from errors import PeerNotConnected, SignalingConnectionError, UnknownPeer
from relay_link import RelayPeerLink
from fakes import ScriptedWebSocket


def make_link(greeting=None):
    ws = ScriptedWebSocket(greeting or {"type": "open", "id": "alice"})

    async def connector(url):
        ws.url = url
        return ws

    return RelayPeerLink("alice", url="ws://relay.test/peer/", connector=connector), ws


async def drain():
    for _ in range(3):
        await asyncio.sleep(0)


def test_start_registers_under_peer_id():
    async def scenario():
        link, ws = make_link()
        opened = []
        link.on("open", opened.append)
        await link.start()
        await link.destroy()
        return link, ws, opened

    link, ws, opened = asyncio.run(scenario())
    assert ws.url == "ws://relay.test/peer/alice"
    assert opened == ["alice"]
    assert link.destroyed and ws.closed


def test_refused_greeting_raises():
    async def scenario():
        link, ws = make_link({"type": "error", "reason": "ID is taken"})
        with pytest.raises(SignalingConnectionError):
            await link.start()
        return link, ws

    link, ws = asyncio.run(scenario())
    assert not link.open
    assert ws.closed


def test_outgoing_connection_lifecycle():
    async def scenario():
        link, ws = make_link()
        await link.start()
        connection = link.connect("bob")
        events = []
        connection.on("open", lambda: events.append("open"))
        connection.on("data", lambda data: events.append(("data", data)))
        connection.on("close", lambda: events.append("close"))
        await drain()
        connect_frame = ws.sent[0]

        with pytest.raises(PeerNotConnected):
            connection.send("too early")

        ws.push({"type": "accept", "src": "bob", "connectionId": connection.connection_id})
        await drain()
        connection.send({"request": "joinCode"})
        ws.push({"type": "data", "src": "bob", "connectionId": connection.connection_id, "payload": "hi"})
        ws.push({"type": "leave", "src": "bob"})
        await drain()
        sent = list(ws.sent)
        await link.destroy()
        return connection, connect_frame, sent, events

    connection, connect_frame, sent, events = asyncio.run(scenario())
    assert connect_frame == {"type": "connect", "dst": "bob", "connectionId": connection.connection_id}
    assert sent[1] == {
        "type": "data", "dst": "bob", "connectionId": connection.connection_id, "payload": {"request": "joinCode"},
    }
    assert events == ["open", ("data", "hi"), "close"]
    assert connection.closed


def test_incoming_connection_is_accepted():
    async def scenario():
        link, ws = make_link()
        await link.start()
        incoming = []
        link.on("connection", incoming.append)
        ws.push({"type": "connect", "src": "bob", "connectionId": "c1"})
        await drain()
        sent = list(ws.sent)
        await link.destroy()
        return incoming, sent

    incoming, sent = asyncio.run(scenario())
    assert [c.peer for c in incoming] == ["bob"]
    assert incoming[0].connection_id == "c1"
    assert sent == [{"type": "accept", "dst": "bob", "connectionId": "c1"}]


def test_unavailable_peer_errors_and_closes():
    async def scenario():
        link, ws = make_link()
        await link.start()
        connection = link.connect("carol")
        errors = []
        connection.on("error", errors.append)
        ws.push({"type": "unavailable", "src": "carol", "connectionId": connection.connection_id})
        await drain()
        await link.destroy()
        return connection, errors

    connection, errors = asyncio.run(scenario())
    assert connection.closed
    assert isinstance(errors[0], UnknownPeer)


def test_losing_the_socket_drops_connections():
    async def scenario():
        link, ws = make_link()
        await link.start()
        connection = link.connect("bob")
        events = []
        link.on("disconnected", lambda: events.append("disconnected"))
        link.on("error", lambda e: events.append(type(e)))
        ws.push(None)
        await drain()
        return link, connection, events

    link, connection, events = asyncio.run(scenario())
    assert link.disconnected and not link.open and not link.destroyed
    assert connection.closed
    assert events == ["disconnected", SignalingConnectionError]
