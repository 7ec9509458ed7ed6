from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from constants import CLOSE_ON_INVALID_JOIN_CODE, PEER_RECONNECT_ATTEMPTS
from errors import CastmeshError, IdentityRequired, PeerNotConnected, UnknownPeer
from join_code import join_codes_match
from logging_config import get_logger
from peer_transport import DataConnection, PeerLink
from reconnect import ReconnectPolicy
from relay_link import RelayPeerLink
from session_client import CONNECT_CLIENTS, END_BROADCAST, USER_JOINED, USER_LEFT, SessionClient
from session_state import Action, SessionStore

logger = get_logger(__name__)

# Handshake payloads on a direct connection
REQUEST_JOIN_CODE = {"request": "joinCode"}
RESPONSE_VALID = {"response": "valid"}
RESPONSE_INVALID = {"response": "invalid"}


class PeerState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CHALLENGE_PENDING = "challenge pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    CLOSED = "closed"


@dataclass(eq=False)
class PeerEntry:
    peer_id: str
    connection: DataConnection
    state: PeerState = PeerState.CONNECTING


class PeerMeshManager:
    """Keeps one direct connection per remote peer and gates each with the join code.

    The broadcaster challenges every connection as soon as it opens; a
    listener answers with its join code and only accepts application payloads
    once the broadcaster has answered "valid".
    """

    def __init__(
        self,
        session: SessionClient,
        store: SessionStore,
        link_factory: Callable[[str], PeerLink] = RelayPeerLink,
        max_reconnect_attempts: int = PEER_RECONNECT_ATTEMPTS,
        close_on_invalid: bool = CLOSE_ON_INVALID_JOIN_CODE,
        call_later: Optional[Callable] = None,
    ):
        self.session = session
        self.store = store
        self.link_factory = link_factory
        self.close_on_invalid = close_on_invalid
        self.link: Optional[PeerLink] = None
        self.connections: Dict[str, PeerEntry] = {}
        self._payload_handlers: List[Callable[[str, Any], None]] = []
        self.reconnect_policy = ReconnectPolicy(
            self._retry_peer_server, self._reconnect_gave_up, max_reconnect_attempts,
            call_later=call_later, name="peer server link",
        )
        session.add_membership_listener(self.handle_membership_event)

    @property
    def is_broadcaster(self) -> bool:
        return self.session.is_broadcaster

    @property
    def join_code(self) -> Optional[str]:
        return self.store.state.join_code

    def on_payload(self, handler: Callable[[str, Any], None]):
        self._payload_handlers.append(handler)

    # -- peer server link -------------------------------------------------------

    async def connect_peer_server(self) -> str:
        user_id = self.session.user_id
        if not user_id:
            raise IdentityRequired("Must obtain ID from socket server")
        link = self.link_factory(user_id)
        link.on("open", self._on_link_open)
        link.on("disconnected", self._on_link_disconnected)
        link.on("error", self._on_link_error)
        link.on("connection", self._on_incoming_connection)
        self.link = link
        await link.start()
        return user_id

    async def disconnect_peer_server(self) -> bool:
        if not self.link:
            raise PeerNotConnected("Peer not connected")
        self.reconnect_policy.cancel()
        link, self.link = self.link, None
        self.disconnect_all()
        await link.destroy()
        self.store.dispatch(Action.PEER_SERVER_DISCONNECTED)
        logger.info("peer destroyed")
        return True

    def _on_link_open(self, peer_id: str):
        self.reconnect_policy.succeeded()
        self.store.dispatch(Action.PEER_SERVER_CONNECTED)

    def _on_link_disconnected(self):
        self.store.dispatch(Action.PEER_SERVER_DISCONNECTED)

    def _on_link_error(self, error: Exception):
        logger.warning(f"Peer server error: {error}")
        self.store.dispatch(Action.PEER_SERVER_ERROR, error=str(error))
        self.reconnect_policy.failed()

    async def _retry_peer_server(self):
        link = self.link
        try:
            if link is not None and link.disconnected and not link.destroyed:
                await link.reconnect()
            else:
                await self.connect_peer_server()
        except CastmeshError as e:
            logger.warning(f"Peer server reconnect failed: {e}")
            self.store.dispatch(Action.PEER_SERVER_ERROR, error=str(e))
            self.reconnect_policy.failed()

    def _reconnect_gave_up(self, error: Exception):
        self.store.dispatch(Action.PEER_SERVER_CONNECT_FAILURE, error=str(error))

    # -- membership -------------------------------------------------------------

    def handle_membership_event(self, kind: str, data: dict):
        if kind == USER_JOINED:
            user = data.get("user")
            if not user or user == self.session.user_id:
                return
            if not self.link:
                raise PeerNotConnected("Cannot connect to peer - peer server connection not established")
            if self.is_broadcaster:
                self.connect_to_peer(user)
            else:
                logger.debug(f"Not my broadcast, peer {user} joined")
        elif kind == CONNECT_CLIENTS:
            for peer_id in data.get("clients") or []:
                self.connect_to_peer(peer_id)
        elif kind == USER_LEFT:
            if data.get("user"):
                self.drop_peer(data["user"])
        elif kind == END_BROADCAST:
            self.disconnect_all()

    def connect_to_peer(self, peer_id: str) -> Optional[PeerEntry]:
        if not self.link:
            raise PeerNotConnected("Cannot connect to peer - peer server connection not established")
        if peer_id == self.session.user_id:
            return None
        existing = self.connections.get(peer_id)
        if existing is not None and existing.state is not PeerState.CLOSED:
            logger.debug(f"Already connected to {peer_id}, reusing")
            return existing
        entry = PeerEntry(peer_id=peer_id, connection=self.link.connect(peer_id))
        self._track(entry)
        return entry

    def drop_peer(self, peer_id: str):
        entry = self.connections.pop(peer_id, None)
        if entry is None:
            return
        logger.info(f"Disconnect from peer {peer_id}")
        entry.state = PeerState.CLOSED
        entry.connection.close()
        self._update_count()

    def disconnect_all(self):
        entries = list(self.connections.values())
        self.connections.clear()
        for entry in entries:
            entry.state = PeerState.CLOSED
            entry.connection.close()
        if entries:
            logger.info(f"Closed {len(entries)} peer connections")
        self._update_count()

    def _on_incoming_connection(self, connection: DataConnection):
        logger.info(f"Incoming connection from {connection.peer}")
        self._track(PeerEntry(peer_id=connection.peer, connection=connection))

    def _track(self, entry: PeerEntry):
        previous = self.connections.get(entry.peer_id)
        self.connections[entry.peer_id] = entry
        if previous is not None and previous.connection is not entry.connection:
            logger.info(f"Replacing connection to {entry.peer_id}")
            previous.state = PeerState.CLOSED
            previous.connection.close()

        connection = entry.connection
        connection.on("open", lambda: self._on_open(entry))
        connection.on("data", lambda data: self._on_data(entry, data))
        connection.on("close", lambda: self._on_close(entry))
        connection.on("error", lambda error: logger.warning(f"Connection to {entry.peer_id} failed: {error}"))
        self._update_count()
        if connection.open:
            self._on_open(entry)

    def _update_count(self):
        self.store.dispatch(Action.PEER_COUNT_UPDATED, count=len(self.connections))

    # -- handshake --------------------------------------------------------------

    def _on_open(self, entry: PeerEntry):
        if entry.state is not PeerState.CONNECTING:
            return
        entry.state = PeerState.OPEN
        logger.info(f"Peer connection opened to {entry.peer_id} (broadcaster={self.is_broadcaster})")
        if self.is_broadcaster:
            entry.state = PeerState.CHALLENGE_PENDING
            entry.connection.send(REQUEST_JOIN_CODE)

    def _on_data(self, entry: PeerEntry, data: Any):
        if isinstance(data, dict) and data.get("request"):
            request = data["request"]
            if request == "joinCode" and self.is_broadcaster:
                logger.warning(f"Ignoring join code request from {entry.peer_id}: this side issues the challenge")
            elif request == "joinCode":
                entry.connection.send({"request": "validateJoinCode", "joinCode": self.join_code})
            elif request == "validateJoinCode":
                self._verify(entry, data.get("joinCode"))
            else:
                logger.warning(f"Unknown request {request} from {entry.peer_id}")
        elif isinstance(data, dict) and data.get("response"):
            self._on_verdict(entry, data["response"])
        elif entry.state is PeerState.VALIDATED:
            for handler in list(self._payload_handlers):
                handler(entry.peer_id, data)
        else:
            logger.warning(f"Dropping payload from unvalidated peer {entry.peer_id}")

    def _verify(self, entry: PeerEntry, offered: Optional[str]):
        if not self.is_broadcaster:
            logger.warning(f"Ignoring join code from {entry.peer_id}: not broadcasting")
            return
        if join_codes_match(self.join_code, offered):
            logger.info(f"Join code verified for {entry.peer_id}")
            entry.state = PeerState.VALIDATED
            entry.connection.send(RESPONSE_VALID)
            return
        logger.warning(f"Invalid join code from {entry.peer_id}")
        entry.state = PeerState.REJECTED
        entry.connection.send(RESPONSE_INVALID)
        if self.close_on_invalid:
            entry.connection.close()

    def _on_verdict(self, entry: PeerEntry, verdict: str):
        if verdict == "valid":
            logger.info(f"Join code accepted by {entry.peer_id}")
            entry.state = PeerState.VALIDATED
        elif verdict == "invalid":
            logger.warning(f"Join code rejected by {entry.peer_id}")
            entry.state = PeerState.REJECTED
            self.store.dispatch(Action.JOIN_ROOM_FAILURE, error="Invalid join code")
            if self.close_on_invalid:
                entry.connection.close()
        else:
            logger.warning(f"Unknown response {verdict} from {entry.peer_id}")

    def _on_close(self, entry: PeerEntry):
        entry.state = PeerState.CLOSED
        if self.connections.get(entry.peer_id) is entry:
            del self.connections[entry.peer_id]
            logger.info(f"Connection closed {entry.peer_id}")
            self._update_count()
        entry.connection.remove_all_listeners()

    # -- fan-out ----------------------------------------------------------------

    def send_to(self, peer_id: str, payload: Any):
        entry = self.connections.get(peer_id)
        # only validated connections carry application payloads
        if entry is None or entry.state is not PeerState.VALIDATED or not entry.connection.open:
            raise UnknownPeer(peer_id)
        entry.connection.send(payload)

    def send_to_all(self, payload: Any) -> int:
        """Send to every validated, open connection. Returns how many were sent."""
        sent = 0
        for entry in list(self.connections.values()):
            if entry.state is not PeerState.VALIDATED or not entry.connection.open:
                continue
            try:
                entry.connection.send(payload)
                sent += 1
            except PeerNotConnected:
                logger.debug(f"Skipping {entry.peer_id}, closed mid-send")
        return sent
