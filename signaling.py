import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from logging_config import get_logger
from registry import IdentityAllocator, RoomRegistry, Session, SessionRegistry
from schemas.signal import EndBroadcastRequest, JoinRequest, RelayMessage, SetIdRequest, SignalEnvelope

logger = get_logger(__name__)

# Inbound event kinds
SET_ID = "setId"
JOIN = "join"
MESSAGE = "message"
END_BROADCAST = "endBroadcast"
DISCONNECT = "disconnect"
UNHANDLED = "unhandled"

# Outbound event names
EVENT_MESSAGE = "message"
EVENT_NEW_MESSAGE = "new message"
EVENT_END_BROADCAST = "endBroadcast"
EVENT_ERROR = "error"


@dataclass
class SignalEvent:
    handle: str
    kind: str
    data: Any = None


class SignalingRelay:
    """Routes control messages between the members of each room.

    Every inbound message and every disconnect is queued as a SignalEvent and
    handled by a single coordinator task, so room and identity state is only
    ever mutated by one handler at a time and per-room delivery order equals
    processing order.
    """

    def __init__(self):
        self.sessions = SessionRegistry()
        self.identities = IdentityAllocator()
        self.rooms = RoomRegistry()
        # session handle -> websocket (anything with an async send_json)
        self.connections: Dict[str, Any] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._handlers = {
            SET_ID: self._on_set_id,
            JOIN: self._on_join,
            MESSAGE: self._on_message,
            END_BROADCAST: self._on_end_broadcast,
            DISCONNECT: self._on_disconnect,
            UNHANDLED: self._on_unhandled,
        }

    async def start(self):
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())
        logger.info("Signaling coordinator started")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Signaling coordinator stopped")

    def register(self, websocket) -> Session:
        session = self.sessions.open()
        self.connections[session.handle] = websocket
        logger.info(f"Client connected: {session.handle}")
        return session

    async def submit(self, handle: str, kind: str, data: Any = None):
        await self._queue.put(SignalEvent(handle=handle, kind=kind, data=data))

    async def submit_raw(self, handle: str, raw: str):
        """Parse one text frame into an event and queue it."""
        try:
            envelope = SignalEnvelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Malformed frame from {handle}: {e}")
            await self.submit(handle, UNHANDLED, {"reason": "malformed frame"})
            return
        if envelope.event not in self._handlers or envelope.event in (DISCONNECT, UNHANDLED):
            await self.submit(handle, UNHANDLED, {"reason": f"unknown event {envelope.event}"})
            return
        await self.submit(handle, envelope.event, envelope.data)

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error handling {event.kind} from {event.handle}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def handle_event(self, event: SignalEvent):
        session = self.sessions.get(event.handle)
        if session is None:
            logger.debug(f"Dropping {event.kind} for closed session {event.handle}")
            return
        await self._handlers[event.kind](session, event.data or {})

    # -- inbound handlers ---------------------------------------------------

    async def _on_set_id(self, session: Session, data):
        request = self._parse(SetIdRequest, data)
        if request is None:
            await self._on_unhandled(session, {"reason": "invalid setId payload"})
            return
        user_id, generated, evicted = self.identities.assign(session, request.id)
        if evicted:
            await self._detach(evicted)
        if generated:
            await self._send(session.handle, EVENT_MESSAGE, {"message": "set user id", "id": user_id})
            logger.info(f"User ID generated: {user_id}")
        else:
            logger.info(f"User ID received: {user_id}")

    async def _on_join(self, session: Session, data):
        request = self._parse(JoinRequest, data)
        if request is None:
            await self._on_unhandled(session, {"reason": "invalid join payload"})
            return
        if not session.user_id:
            logger.warning(f"Join before setId from {session.handle}")
            await self._send(session.handle, EVENT_ERROR, {"message": "setId required before join"})
            return

        room_id = request.room or self.rooms.new_room_id()
        if session.room_id and session.room_id != room_id:
            await self._leave(session)
        self.rooms.join(room_id, session.handle)
        session.room_id = room_id
        logger.info(f"User {session.user_id} joined room: {room_id} as {'host' if request.myBroadcast else 'listener'}")

        if request.myBroadcast:
            clients = [
                s.user_id for s in self._member_sessions(room_id)
                if s.handle != session.handle and s.user_id and s.user_id != session.user_id
            ]
            await self._send(session.handle, EVENT_MESSAGE, {"message": "connect clients", "clients": clients})
        else:
            await self._emit_to_room(room_id, EVENT_MESSAGE, {
                "user": session.user_id,
                "message": "user joined room",
                "room": room_id,
                "isHost": False,
            }, exclude=session.handle)
        await self._send(session.handle, EVENT_MESSAGE, {"user": session.user_id, "message": "room joined", "room": room_id})

    async def _on_message(self, session: Session, data):
        request = self._parse(RelayMessage, data)
        if request is None or not request.is_routable():
            logger.warning(f"Unhandled message from {session.handle}: {data}")
            return
        await self._emit_to_room(request.room, EVENT_NEW_MESSAGE, {"user": request.user, "message": request.message})

    async def _on_end_broadcast(self, session: Session, data):
        request = self._parse(EndBroadcastRequest, data)
        if request is None:
            await self._on_unhandled(session, {"reason": "invalid endBroadcast payload"})
            return
        room_id = request.room
        logger.info(f"endBroadcast for room {room_id} from {session.user_id}")
        members = self.rooms.members(room_id)
        members.add(session.handle)
        await self._broadcast(members, EVENT_END_BROADCAST, {})
        for handle in self.rooms.remove(room_id):
            member = self.sessions.get(handle)
            if member and member.room_id == room_id:
                member.room_id = None

    async def _on_disconnect(self, session: Session, data):
        await self._leave(session)
        self.identities.release(session)
        self.sessions.close(session.handle)
        self.connections.pop(session.handle, None)
        logger.info(f"Client disconnected: {session.user_id or session.handle}")

    async def _on_unhandled(self, session: Session, data):
        reason = data.get("reason", "unhandled") if isinstance(data, dict) else "unhandled"
        logger.warning(f"Unhandled event from {session.handle}: {reason}")
        await self._send(session.handle, EVENT_ERROR, {"message": reason})

    # -- helpers ------------------------------------------------------------

    async def _leave(self, session: Session):
        room_id = session.room_id
        if not room_id:
            return
        session.room_id = None
        if self.rooms.leave(room_id, session.handle) and session.user_id:
            await self._emit_to_room(room_id, EVENT_MESSAGE, {
                "user": session.user_id,
                "message": "user left room",
                "room": room_id,
            })

    async def _detach(self, handle: str):
        """Drop a session whose user id was claimed by a newer channel."""
        stale = self.sessions.get(handle)
        if stale is None:
            return
        if stale.room_id:
            self.rooms.leave(stale.room_id, handle)
            stale.room_id = None
        stale.user_id = None

    def _member_sessions(self, room_id: str):
        for handle in self.rooms.members(room_id):
            session = self.sessions.get(handle)
            if session:
                yield session

    async def _emit_to_room(self, room_id: str, event: str, data: dict, exclude: Optional[str] = None):
        handles = [h for h in self.rooms.members(room_id) if h != exclude]
        await self._broadcast(handles, event, data)

    async def _broadcast(self, handles: Iterable[str], event: str, data: dict):
        sends = [self._send(handle, event, data) for handle in handles]
        if sends:
            await asyncio.gather(*sends)
            logger.debug(f"Sent {event} to {len(sends)} connections")

    async def _send(self, handle: str, event: str, data: dict):
        websocket = self.connections.get(handle)
        if websocket is None:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception as e:
            # the disconnect event for this handle is already on its way
            logger.warning(f"Error sending {event} to connection {handle}: {e}")

    @staticmethod
    def _parse(model, data):
        try:
            return model.model_validate(data)
        except ValidationError:
            return None
