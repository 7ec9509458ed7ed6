from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

from logging_config import get_logger

logger = get_logger(__name__)


class SessionState(BaseModel):
    socket_connected: bool = False
    peer_connected: bool = False
    server_offline: bool = True
    user_id: Optional[str] = None
    room_id: Optional[str] = None
    join_code: Optional[str] = None
    is_broadcasting: bool = False
    is_viewing_broadcast: bool = False
    peer_connection_count: int = 0
    error: Optional[str] = None


class Action(str, Enum):
    SOCKET_CONNECTED = "socket connected"
    SOCKET_USER_ID = "socket user id"
    SOCKET_CONNECT_FAILURE = "socket connect failure"
    SOCKET_ERROR = "socket error"
    SOCKET_DISCONNECTED = "socket disconnected"

    PEER_SERVER_CONNECTED = "peer server connected"
    PEER_SERVER_CONNECT_FAILURE = "peer server connect failure"
    PEER_SERVER_DISCONNECTED = "peer server disconnected"
    PEER_SERVER_ERROR = "peer server error"

    BROADCAST_ROOM_CREATED = "broadcast room created"
    BROADCAST_ROOM_FAILURE = "broadcast room failure"

    SET_JOIN_CODE = "set join code"
    CLEAR_JOIN_CODE = "clear join code"

    JOIN_ROOM = "join room"
    JOIN_ROOM_SUCCESS = "join room success"
    JOIN_ROOM_FAILURE = "join room failure"
    VIEWING_ENDED = "viewing ended"

    END_BROADCAST_SUCCESS = "end broadcast success"
    END_BROADCAST_FAILURE = "end broadcast failure"

    PEER_COUNT_UPDATED = "peer count updated"

    RESET = "reset"


_TRANSITIONS = {
    Action.SOCKET_CONNECTED: lambda s, p: {"socket_connected": True, "server_offline": False, "error": None},
    Action.SOCKET_USER_ID: lambda s, p: {"user_id": p["id"]},
    Action.SOCKET_CONNECT_FAILURE: lambda s, p: {"socket_connected": False, "server_offline": True, "error": p["error"]},
    Action.SOCKET_ERROR: lambda s, p: {"socket_connected": False, "error": p["error"]},
    Action.SOCKET_DISCONNECTED: lambda s, p: {"socket_connected": False, "user_id": None},

    Action.PEER_SERVER_CONNECTED: lambda s, p: {"peer_connected": True, "error": None},
    Action.PEER_SERVER_CONNECT_FAILURE: lambda s, p: {"peer_connected": False, "error": p["error"]},
    Action.PEER_SERVER_DISCONNECTED: lambda s, p: {"peer_connected": False},
    Action.PEER_SERVER_ERROR: lambda s, p: {"peer_connected": False, "error": p["error"]},

    Action.BROADCAST_ROOM_CREATED: lambda s, p: {"room_id": p["id"], "is_broadcasting": True},
    Action.BROADCAST_ROOM_FAILURE: lambda s, p: {"error": p["error"]},

    Action.SET_JOIN_CODE: lambda s, p: {"join_code": p["join_code"]},
    Action.CLEAR_JOIN_CODE: lambda s, p: {"join_code": None},

    Action.JOIN_ROOM: lambda s, p: {"room_id": p["id"]},
    Action.JOIN_ROOM_SUCCESS: lambda s, p: {"is_viewing_broadcast": True},
    Action.JOIN_ROOM_FAILURE: lambda s, p: {"is_viewing_broadcast": False, "error": p["error"]},
    Action.VIEWING_ENDED: lambda s, p: {"is_viewing_broadcast": False, "room_id": None},

    Action.END_BROADCAST_SUCCESS: lambda s, p: {"is_broadcasting": False, "room_id": None},
    Action.END_BROADCAST_FAILURE: lambda s, p: {"is_broadcasting": False, "error": p["error"]},

    Action.PEER_COUNT_UPDATED: lambda s, p: {"peer_connection_count": p["count"]},

    Action.RESET: lambda s, p: SessionState().model_dump(),
}


def reduce(state: SessionState, action: Action, **payload) -> SessionState:
    """Return the state that results from applying action to state. Never mutates state."""
    transition = _TRANSITIONS.get(action)
    if transition is None:
        return state
    return state.model_copy(update=transition(state, payload))


class SessionStore:
    """Holds the process-wide SessionState and notifies subscribers on change."""

    def __init__(self, initial: Optional[SessionState] = None):
        self.state = initial or SessionState()
        self._listeners: List[Callable[[SessionState, Action], None]] = []

    def dispatch(self, action: Action, **payload) -> SessionState:
        new_state = reduce(self.state, action, **payload)
        if new_state != self.state:
            logger.debug(f"{action.value}: {payload}")
        self.state = new_state
        for listener in list(self._listeners):
            listener(new_state, action)
        return new_state

    def subscribe(self, listener: Callable[[SessionState, Action], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def reset(self):
        self.dispatch(Action.RESET)
