import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import websockets
import websockets.exceptions

from backend import RedisCache
from constants import (
    CACHE_PERSIST_MINS,
    CONNECT_TIMEOUT_SECONDS,
    DISCONNECT_TIMEOUT_SECONDS,
    END_BROADCAST_TIMEOUT_SECONDS,
    JOIN_TIMEOUT_SECONDS,
    SIGNAL_RECONNECT_ATTEMPTS,
    SIGNAL_URL,
)
from errors import NoActiveRoom, OperationTimeout, SignalingConnectionError
from join_code import generate_join_code
from logging_config import get_logger
from reconnect import ReconnectPolicy
from redis_keys import JOIN_CODE_KEY, ROOM_ID_KEY, USER_ID_KEY
from session_state import Action, SessionStore

logger = get_logger(__name__)

# Membership events handed to listeners (the peer mesh)
USER_JOINED = "user joined room"
USER_LEFT = "user left room"
CONNECT_CLIENTS = "connect clients"
END_BROADCAST = "endBroadcast"
NEW_MESSAGE = "new message"
UNHANDLED = "unhandled"

# Channel lifecycle events, never sent by the server
_CONNECTED = "_connected"
_DISCONNECTED = "_disconnected"


@dataclass
class ChannelEvent:
    kind: str
    data: Any = None
    channel: Any = None


@dataclass
class PendingJoin:
    """What a join commits once the server answers "room joined"."""
    join_code: Optional[str]
    fresh_code: bool = False


class SessionClient:
    """Owns the signaling channel.

    Inbound frames and channel lifecycle changes are queued as ChannelEvents
    and handled one at a time by a single dispatcher task. Operations that
    need an answer from the server (connect, join_room, end_broadcast) wait on
    a future that the dispatcher resolves.
    """

    def __init__(
        self,
        cache: RedisCache,
        store: SessionStore,
        url: str = SIGNAL_URL,
        connector: Optional[Callable] = None,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        join_timeout: float = JOIN_TIMEOUT_SECONDS,
        disconnect_timeout: float = DISCONNECT_TIMEOUT_SECONDS,
        end_broadcast_timeout: float = END_BROADCAST_TIMEOUT_SECONDS,
        max_reconnect_attempts: int = SIGNAL_RECONNECT_ATTEMPTS,
        call_later: Optional[Callable] = None,
    ):
        self.cache = cache
        self.store = store
        self.url = url
        self._connector = connector or websockets.connect
        self.connect_timeout = connect_timeout
        self.join_timeout = join_timeout
        self.disconnect_timeout = disconnect_timeout
        self.end_broadcast_timeout = end_broadcast_timeout

        cached = self.cache.load(USER_ID_KEY) or {}
        self.user_id: Optional[str] = cached.get("id")
        self.is_broadcaster = False

        self._channel = None
        self._events: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None
        self._closing = False
        self._id_waiter: Optional[asyncio.Future] = None
        self._room_waiter: Optional[asyncio.Future] = None
        self._pending_join: Optional[PendingJoin] = None
        self._end_waiter: Optional[asyncio.Future] = None
        self._close_waiter: Optional[asyncio.Future] = None
        self._membership_listeners: List[Callable[[str, dict], None]] = []

        self.reconnect_policy = ReconnectPolicy(
            self._reopen, self._reconnect_gave_up, max_reconnect_attempts,
            call_later=call_later, name="signaling channel",
        )
        logger.info(f"Socket Server: {self.url}")

    @property
    def connected(self) -> bool:
        return self._channel is not None

    def add_membership_listener(self, listener: Callable[[str, dict], None]):
        self._membership_listeners.append(listener)

    # -- operations -----------------------------------------------------------

    async def connect(self) -> str:
        """Open the channel (or re-announce on an open one) and return the effective user id."""
        self._id_waiter = asyncio.get_running_loop().create_future()
        if self._channel is None:
            await self._open()
        else:
            await self._announce()
            if self.user_id:
                self._resolve(self._id_waiter, self.user_id)
        try:
            return await asyncio.wait_for(self._id_waiter, self.connect_timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout("connect", self.connect_timeout)

    async def disconnect(self) -> bool:
        """Close the channel; False when no close acknowledgement arrived in time."""
        self.reconnect_policy.cancel()
        channel = self._channel
        if channel is None:
            self.store.reset()
            return True
        self._closing = True
        self._close_waiter = asyncio.get_running_loop().create_future()
        self._closer = asyncio.ensure_future(self._close_channel(channel))
        try:
            await asyncio.wait_for(self._close_waiter, self.disconnect_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("No disconnect acknowledgement from signaling server")
            return False
        finally:
            self.store.reset()

    async def join_room(self, room: Optional[str] = None, join_code: Optional[str] = None) -> str:
        """Join room, or resume/create a broadcast when room is None. Returns the room id."""
        my_broadcast = not room
        if not room:
            cached = self.cache.load(ROOM_ID_KEY) or {}
            if cached.get("room"):
                room = cached["room"]
            if cached.get("myBroadcast") is not None:
                my_broadcast = cached["myBroadcast"]
        was_broadcaster, self.is_broadcaster = self.is_broadcaster, my_broadcast

        code, fresh_code = join_code, False
        if my_broadcast:
            code = (self.cache.load(JOIN_CODE_KEY) or {}).get("joinCode")
            if not code:
                code, fresh_code = generate_join_code(), True

        # state and cache only change once the server confirms the room
        self._pending_join = PendingJoin(code, fresh_code)
        self._room_waiter = asyncio.get_running_loop().create_future()
        try:
            await self._emit("join", {"room": room, "myBroadcast": my_broadcast})
            return await asyncio.wait_for(self._room_waiter, self.join_timeout)
        except asyncio.TimeoutError:
            self.is_broadcaster = was_broadcaster
            raise OperationTimeout("join", self.join_timeout)
        except SignalingConnectionError:
            self.is_broadcaster = was_broadcaster
            raise
        finally:
            self._pending_join = None

    async def send_server_message(self, data: dict):
        """Relay data to the room through the server. No delivery confirmation."""
        try:
            await self._emit("message", data)
        except SignalingConnectionError as e:
            logger.warning(f"Dropped server message: {e}")

    async def end_broadcast(self):
        cached = self.cache.load(ROOM_ID_KEY) or {}
        room = cached.get("room")
        if not room:
            raise NoActiveRoom("No room defined for broadcast")
        self.cache.remove(ROOM_ID_KEY)
        self.cache.remove(JOIN_CODE_KEY)

        self._end_waiter = asyncio.get_running_loop().create_future()
        await self._emit("endBroadcast", {"room": room})
        self._notify(END_BROADCAST, {"room": room})
        try:
            await asyncio.wait_for(self._end_waiter, self.end_broadcast_timeout)
        except asyncio.TimeoutError:
            self.store.dispatch(Action.END_BROADCAST_FAILURE, error="End broadcast was not acknowledged")
            raise OperationTimeout("endBroadcast", self.end_broadcast_timeout)
        logger.info("endBroadcast response received")
        self.is_broadcaster = False
        self.store.dispatch(Action.END_BROADCAST_SUCCESS)
        self.store.dispatch(Action.CLEAR_JOIN_CODE)

    async def aclose(self):
        """Tear down the channel and the dispatcher task."""
        if self._channel is not None:
            await self.disconnect()
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        self._events = None

    # -- channel plumbing -------------------------------------------------------

    async def _open(self, rejoin: bool = False):
        self._closing = False
        try:
            channel = await asyncio.wait_for(self._connector(self.url), self.connect_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            self.store.dispatch(Action.SOCKET_CONNECT_FAILURE, error=str(e) or "connection failed")
            raise SignalingConnectionError(f"Could not reach signaling server at {self.url}: {e}") from e

        self._channel = channel
        if self._events is None:
            self._events = asyncio.Queue()
            self._dispatcher = asyncio.create_task(self._dispatch_loop())
        self._reader = asyncio.create_task(self._read(channel))
        await self._events.put(ChannelEvent(_CONNECTED, {"rejoin": rejoin}, channel))

    async def _reopen(self):
        if self._closing or self._channel is not None:
            return
        try:
            await self._open(rejoin=True)
        except SignalingConnectionError as e:
            logger.warning(f"Signaling reconnect failed: {e}")
            self.reconnect_policy.failed()

    def _reconnect_gave_up(self, error):
        self.store.dispatch(Action.SOCKET_CONNECT_FAILURE, error=str(error))

    async def _close_channel(self, channel):
        try:
            await channel.close()
        except websockets.exceptions.WebSocketException as e:
            logger.debug(f"Error closing signaling channel: {e}")

    async def _read(self, channel):
        events = self._events
        try:
            async for raw in channel:
                try:
                    frame = json.loads(raw)
                    event = ChannelEvent(frame["event"], frame.get("data"), channel)
                except (json.JSONDecodeError, KeyError, TypeError):
                    logger.warning(f"Malformed frame from signaling server: {raw!r}")
                    continue
                await events.put(event)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Signaling channel closed: {e}")
        finally:
            await events.put(ChannelEvent(_DISCONNECTED, None, channel))

    async def _dispatch_loop(self):
        while True:
            event = await self._events.get()
            try:
                await self._handle(event)
            except Exception as e:
                logger.error(f"Error handling signaling event {event.kind}: {e}", exc_info=True)

    async def _handle(self, event: ChannelEvent):
        if event.kind == _CONNECTED:
            await self._on_connected(event)
        elif event.kind == _DISCONNECTED:
            self._on_disconnected(event)
        elif event.kind == "message":
            await self._on_server_message(event.data or {})
        elif event.kind == NEW_MESSAGE:
            self._notify(NEW_MESSAGE, event.data or {})
        elif event.kind == END_BROADCAST:
            self._on_end_broadcast()
        elif event.kind == "error":
            logger.warning(f"Signaling server reported an error: {event.data}")
            self._notify(UNHANDLED, {"event": "error", "data": event.data})
        else:
            logger.warning(f"UNHANDLED EVENT {event.kind}: {event.data}")
            self._notify(UNHANDLED, {"event": event.kind, "data": event.data})

    async def _on_connected(self, event: ChannelEvent):
        if event.channel is not self._channel:
            return
        self.reconnect_policy.succeeded()
        self.store.dispatch(Action.SOCKET_CONNECTED)
        await self._announce()
        if self.user_id:
            self.store.dispatch(Action.SOCKET_USER_ID, id=self.user_id)
            self._resolve(self._id_waiter, self.user_id)
        room = self.store.state.room_id
        if event.data.get("rejoin") and room:
            logger.info(f"Rejoining room {room} after reconnect")
            await self._emit("join", {"room": room, "myBroadcast": self.is_broadcaster})

    def _on_disconnected(self, event: ChannelEvent):
        if event.channel is not self._channel:
            return
        self._channel = None
        self.store.dispatch(Action.SOCKET_DISCONNECTED)
        if self._closing:
            self._resolve(self._close_waiter, True)
            return
        logger.warning("Lost connection to signaling server")
        self.store.dispatch(Action.SOCKET_ERROR, error="Lost connection to signaling server")
        self.reconnect_policy.failed()

    async def _on_server_message(self, data: dict):
        message = data.get("message")
        if message == "room joined":
            room = data.get("room")
            if not room:
                return
            logger.debug(f"Room joined: {room}")
            pending, self._pending_join = self._pending_join, None
            if pending is not None and pending.join_code:
                if pending.fresh_code:
                    self.cache.save(JOIN_CODE_KEY, {"joinCode": pending.join_code})
                self.store.dispatch(Action.SET_JOIN_CODE, join_code=pending.join_code)
            self.cache.save(ROOM_ID_KEY, {"room": room, "myBroadcast": self.is_broadcaster},
                            expiration_mins=CACHE_PERSIST_MINS)
            if self.is_broadcaster:
                self.store.dispatch(Action.BROADCAST_ROOM_CREATED, id=room)
            else:
                self.store.dispatch(Action.JOIN_ROOM, id=room)
                self.store.dispatch(Action.JOIN_ROOM_SUCCESS)
            self._resolve(self._room_waiter, room)
        elif message == "set user id":
            if self.user_id:
                # a cached id wins over a freshly generated one
                await self._announce()
                if data.get("id") == self.user_id:
                    self._resolve(self._id_waiter, self.user_id)
            elif data.get("id"):
                self.user_id = data["id"]
                self.cache.save(USER_ID_KEY, {"id": self.user_id}, expiration_mins=CACHE_PERSIST_MINS)
                self.store.dispatch(Action.SOCKET_USER_ID, id=self.user_id)
                self._resolve(self._id_waiter, self.user_id)
        elif message in (USER_JOINED, USER_LEFT, CONNECT_CLIENTS):
            self._notify(message, data)
        else:
            logger.warning(f"UNHANDLED MESSAGE: {data}")
            self._notify(UNHANDLED, data)

    def _on_end_broadcast(self):
        self._resolve(self._end_waiter, True)
        if not self.is_broadcaster:
            cached = self.cache.load(ROOM_ID_KEY) or {}
            if cached.get("room") and cached.get("room") == self.store.state.room_id:
                self.cache.remove(ROOM_ID_KEY)
            self.store.dispatch(Action.VIEWING_ENDED)
            self.store.dispatch(Action.CLEAR_JOIN_CODE)
        self._notify(END_BROADCAST, {})

    async def _announce(self):
        await self._emit("setId", {"id": self.user_id})

    async def _emit(self, event: str, data: Any):
        channel = self._channel
        if channel is None:
            raise SignalingConnectionError("Signaling channel is not connected")
        try:
            await channel.send(json.dumps({"event": event, "data": data}))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingConnectionError(f"Signaling channel closed while sending {event}") from e

    def _notify(self, kind: str, data: dict):
        for listener in list(self._membership_listeners):
            try:
                listener(kind, data)
            except Exception as e:
                logger.error(f"Membership listener failed on {kind}: {e}", exc_info=True)

    @staticmethod
    def _resolve(future: Optional[asyncio.Future], value):
        if future is not None and not future.done():
            future.set_result(value)
