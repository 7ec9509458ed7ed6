from typing import Any, Callable, Optional, Tuple

from backend import RedisCache
from join_code import is_valid_join_code, is_valid_room_id
from logging_config import get_logger
from peer_mesh import PeerMeshManager
from peer_transport import PeerLink
from relay_link import RelayPeerLink
from session_client import SessionClient
from session_state import SessionState, SessionStore

logger = get_logger(__name__)


class BroadcastSession:
    """Client entry point: one signaling session, one peer link, one mesh."""

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        store: Optional[SessionStore] = None,
        session: Optional[SessionClient] = None,
        link_factory: Callable[[str], PeerLink] = RelayPeerLink,
        mesh: Optional[PeerMeshManager] = None,
    ):
        self.cache = cache or RedisCache()
        self.store = store or SessionStore()
        self.session = session or SessionClient(self.cache, self.store)
        self.mesh = mesh or PeerMeshManager(self.session, self.store, link_factory=link_factory)

    @property
    def state(self) -> SessionState:
        return self.store.state

    async def start(self) -> str:
        user_id = await self.session.connect()
        if self.mesh.link is None:
            await self.mesh.connect_peer_server()
        return user_id

    async def host(self) -> Tuple[str, str]:
        """Create (or resume the cached) broadcast. Returns (room id, join code)."""
        room_id = await self.session.join_room()
        return room_id, self.store.state.join_code

    async def join(self, room_id: str, join_code: str) -> str:
        if not is_valid_room_id(room_id) or not is_valid_join_code(join_code):
            logger.warning(f"Joining {room_id} with a room id or join code outside the generated alphabet")
        return await self.session.join_room(room_id, join_code)

    async def end(self):
        await self.session.end_broadcast()

    def send(self, payload: Any) -> int:
        return self.mesh.send_to_all(payload)

    def send_to(self, peer_id: str, payload: Any):
        self.mesh.send_to(peer_id, payload)

    def on_payload(self, handler: Callable[[str, Any], None]):
        self.mesh.on_payload(handler)

    async def close(self):
        if self.mesh.link is not None:
            await self.mesh.disconnect_peer_server()
        await self.session.aclose()
