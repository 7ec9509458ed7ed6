import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set, Tuple

from join_code import generate_room_id
from logging_config import get_logger

logger = get_logger(__name__)


def generate_user_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    """Server-side record for one signaling channel, keyed by its connection handle."""
    handle: str
    user_id: Optional[str] = None
    room_id: Optional[str] = None
    connected_at: str = field(default_factory=lambda: datetime.now().isoformat())


class SessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def open(self) -> Session:
        handle = str(uuid.uuid4())
        session = Session(handle=handle)
        self._sessions[handle] = session
        logger.debug(f"Opened session {handle} ({len(self._sessions)} live)")
        return session

    def get(self, handle: str) -> Optional[Session]:
        return self._sessions.get(handle)

    def close(self, handle: str) -> Optional[Session]:
        session = self._sessions.pop(handle, None)
        if session:
            logger.debug(f"Closed session {handle} ({len(self._sessions)} live)")
        return session

    def __len__(self):
        return len(self._sessions)


class IdentityAllocator:
    """Maps each user id to the one live session that currently holds it."""

    def __init__(self):
        self._owners: Dict[str, str] = {}  # user_id -> session handle

    def assign(self, session: Session, provided_id: Optional[str] = None) -> Tuple[str, bool, Optional[str]]:
        """Attach a user id to the session.

        Returns (user_id, generated, evicted_handle). A reconnecting client that
        supplies its previous id is trusted; if another live session still holds
        that id, its claim is dropped and its handle returned so the caller can
        detach it.
        """
        if session.user_id and session.user_id != provided_id:
            self.release(session)

        if provided_id:
            user_id, generated = provided_id, False
        else:
            user_id, generated = generate_user_id(), True
            while user_id in self._owners:
                user_id = generate_user_id()

        evicted = self._owners.get(user_id)
        if evicted == session.handle:
            evicted = None
        self._owners[user_id] = session.handle
        session.user_id = user_id
        if evicted:
            logger.warning(f"User id {user_id} moved from session {evicted} to {session.handle}")
        return user_id, generated, evicted

    def owner_of(self, user_id: str) -> Optional[str]:
        return self._owners.get(user_id)

    def release(self, session: Session) -> bool:
        if session.user_id and self._owners.get(session.user_id) == session.handle:
            del self._owners[session.user_id]
            return True
        return False


class RoomRegistry:
    """Room id -> set of member session handles.

    A room survives reaching zero members; only remove() drops it.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}

    def new_room_id(self) -> str:
        room_id = generate_room_id()
        while room_id in self._rooms:
            room_id = generate_room_id()
        return room_id

    def join(self, room_id: str, handle: str) -> bool:
        members = self._rooms.setdefault(room_id, set())
        added = handle not in members
        members.add(handle)
        logger.debug(f"Session {handle} in room {room_id} ({len(members)} members, new={added})")
        return added

    def leave(self, room_id: str, handle: str) -> bool:
        members = self._rooms.get(room_id)
        if not members or handle not in members:
            return False
        members.discard(handle)
        logger.debug(f"Session {handle} left room {room_id} ({len(members)} members)")
        return True

    def members(self, room_id: str) -> Set[str]:
        return set(self._rooms.get(room_id, ()))

    def exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def remove(self, room_id: str) -> Set[str]:
        members = self._rooms.pop(room_id, set())
        logger.info(f"Room {room_id} removed ({len(members)} members at removal)")
        return members

    def __len__(self):
        return len(self._rooms)
