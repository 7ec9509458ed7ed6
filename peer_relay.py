from typing import Any, Dict, Set

from pydantic import ValidationError

from logging_config import get_logger
from schemas.peer import FORWARDED_TYPES, PeerFrame

logger = get_logger(__name__)

ID_TAKEN_CLOSE_CODE = 4001


class PeerRelay:
    """Forwards direct-connection frames between peer ids.

    Stands in for a hosted peer broker: it knows nothing about rooms or join
    codes, it only moves connect/accept/data/close frames from src to dst.
    """

    def __init__(self):
        self.peers: Dict[str, Any] = {}  # peer id -> websocket
        self.contacts: Dict[str, Set[str]] = {}  # peer id -> peers it exchanged frames with

    def claim(self, peer_id: str, websocket) -> bool:
        if peer_id in self.peers:
            logger.warning(f"Peer id {peer_id} already taken")
            return False
        self.peers[peer_id] = websocket
        self.contacts[peer_id] = set()
        logger.info(f"Peer {peer_id} registered ({len(self.peers)} peers)")
        return True

    async def release(self, peer_id: str, websocket):
        if self.peers.get(peer_id) is not websocket:
            return
        del self.peers[peer_id]
        contacts = self.contacts.pop(peer_id, set())
        logger.info(f"Peer {peer_id} left ({len(self.peers)} peers)")
        for other in contacts:
            self.contacts.get(other, set()).discard(peer_id)
            await self._deliver(other, {"type": "leave", "src": peer_id})

    async def forward(self, src: str, data: Any):
        try:
            frame = PeerFrame.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Malformed peer frame from {src}: {e}")
            return
        if frame.type not in FORWARDED_TYPES or not frame.dst:
            logger.warning(f"Unhandled peer frame type {frame.type} from {src}")
            return

        if frame.dst not in self.peers:
            logger.debug(f"Peer {frame.dst} unavailable for {src}")
            await self._deliver(src, {"type": "unavailable", "connectionId": frame.connectionId, "src": frame.dst})
            return

        self.contacts[src].add(frame.dst)
        self.contacts[frame.dst].add(src)
        outbound = frame.model_dump(exclude_none=True)
        outbound["src"] = src
        outbound.pop("dst", None)
        await self._deliver(frame.dst, outbound)

    async def _deliver(self, peer_id: str, frame: dict):
        websocket = self.peers.get(peer_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(frame)
        except Exception as e:
            logger.warning(f"Error delivering {frame.get('type')} to peer {peer_id}: {e}")
