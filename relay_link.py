import asyncio
import json
import uuid
from typing import Any, Callable, Dict, Optional

import websockets
import websockets.exceptions

from constants import CONNECT_TIMEOUT_SECONDS, PEER_URL
from errors import PeerNotConnected, SignalingConnectionError, UnknownPeer
from logging_config import get_logger
from peer_transport import DataConnection, PeerLink

logger = get_logger(__name__)


class RelayDataConnection(DataConnection):
    def __init__(self, link: "RelayPeerLink", peer: str, connection_id: str):
        super().__init__(peer)
        self.link = link
        self.connection_id = connection_id

    def send(self, data: Any):
        if not self.open:
            raise PeerNotConnected(f"connection to {self.peer} is not open")
        self.link._enqueue({"type": "data", "dst": self.peer, "connectionId": self.connection_id, "payload": data})

    def close(self):
        if self.closed:
            return
        if self.link.open:
            self.link._enqueue({"type": "close", "dst": self.peer, "connectionId": self.connection_id})
        self._closed()

    def _opened(self):
        if self.open or self.closed:
            return
        self.open = True
        self.emit("open")

    def _closed(self):
        if self.closed:
            return
        self.open = False
        self.closed = True
        self.link._forget(self)
        self.emit("close")


class RelayPeerLink(PeerLink):
    """PeerLink over the /peer/{id} relay WebSocket.

    Outbound frames go through one queue and one writer task so frames on a
    connection keep their order.
    """

    def __init__(self, peer_id: str, url: str = PEER_URL, connector: Optional[Callable] = None,
                 open_timeout: float = CONNECT_TIMEOUT_SECONDS):
        super().__init__(peer_id)
        self.url = url.rstrip("/")
        self._connector = connector or websockets.connect
        self.open_timeout = open_timeout
        self._ws = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._connections: Dict[str, RelayDataConnection] = {}

    async def start(self):
        if self.destroyed:
            raise PeerNotConnected("Peer link has been destroyed")
        endpoint = f"{self.url}/{self.id}"
        try:
            ws = await asyncio.wait_for(self._connector(endpoint), self.open_timeout)
            greeting = json.loads(await asyncio.wait_for(ws.recv(), self.open_timeout))
        except (OSError, asyncio.TimeoutError, json.JSONDecodeError, websockets.exceptions.WebSocketException) as e:
            raise SignalingConnectionError(f"Could not reach peer server at {endpoint}: {e}") from e
        if greeting.get("type") != "open":
            await ws.close()
            raise SignalingConnectionError(f"Peer server refused id {self.id}: {greeting}")

        self._ws = ws
        self._outbox = asyncio.Queue()
        self.open = True
        self.disconnected = False
        self._reader = asyncio.create_task(self._read(ws))
        self._writer = asyncio.create_task(self._write(ws, self._outbox))
        logger.info(f"Peer link {self.id} registered with {self.url}")
        self.emit("open", self.id)

    def connect(self, peer_id: str) -> RelayDataConnection:
        if not self.open:
            raise PeerNotConnected("Cannot connect to peer - peer server connection not established")
        connection = RelayDataConnection(self, peer_id, uuid.uuid4().hex)
        self._connections[connection.connection_id] = connection
        self._enqueue({"type": "connect", "dst": peer_id, "connectionId": connection.connection_id})
        logger.debug(f"Connecting to peer {peer_id} ({connection.connection_id})")
        return connection

    async def reconnect(self):
        if self.destroyed:
            raise PeerNotConnected("Peer link has been destroyed")
        if not self.disconnected:
            return
        await self.start()

    async def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        self._drop_connections()
        self.open = False
        for task in (self._reader, self._writer):
            if task:
                task.cancel()
        if self._ws is not None:
            try:
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing peer link socket: {e}")
        self.disconnected = True
        logger.info(f"Peer link {self.id} destroyed")
        self.emit("disconnected")
        self.emit("close")

    def _enqueue(self, frame: dict):
        if self._outbox is None:
            raise PeerNotConnected("Peer link is not open")
        self._outbox.put_nowait(frame)

    def _forget(self, connection: RelayDataConnection):
        self._connections.pop(connection.connection_id, None)

    def _drop_connections(self):
        for connection in list(self._connections.values()):
            connection._closed()
        self._connections.clear()

    async def _write(self, ws, outbox: asyncio.Queue):
        while True:
            frame = await outbox.get()
            try:
                await ws.send(json.dumps(frame))
            except websockets.exceptions.ConnectionClosed:
                return

    async def _read(self, ws):
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Malformed frame on peer link {self.id}")
                    continue
                self._handle_frame(frame)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Peer link {self.id} closed: {e}")
        if ws is self._ws:
            self._lost()

    def _lost(self):
        if self.destroyed:
            return
        self.open = False
        self.disconnected = True
        if self._writer:
            self._writer.cancel()
        self._outbox = None
        # relayed connections cannot outlive the relay socket
        self._drop_connections()
        logger.warning(f"Peer link {self.id} lost its connection to the peer server")
        self.emit("disconnected")
        self.emit("error", SignalingConnectionError("Lost connection to peer server"))

    def _handle_frame(self, frame: dict):
        kind = frame.get("type")
        src = frame.get("src")
        connection = self._connections.get(frame.get("connectionId"))

        if kind == "connect":
            incoming = RelayDataConnection(self, src, frame.get("connectionId") or uuid.uuid4().hex)
            self._connections[incoming.connection_id] = incoming
            self._enqueue({"type": "accept", "dst": src, "connectionId": incoming.connection_id})
            logger.debug(f"Incoming connection from {src}")
            self.emit("connection", incoming)
            incoming._opened()
        elif kind == "accept" and connection:
            connection._opened()
        elif kind == "data" and connection:
            if connection.open:
                connection.emit("data", frame.get("payload"))
        elif kind == "close" and connection:
            connection._closed()
        elif kind == "unavailable" and connection:
            connection.emit("error", UnknownPeer(src))
            connection._closed()
        elif kind == "leave":
            for other in [c for c in self._connections.values() if c.peer == src]:
                other._closed()
        else:
            logger.warning(f"Unhandled peer frame {kind} on link {self.id}")
