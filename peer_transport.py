from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable

from logging_config import get_logger

logger = get_logger(__name__)


class EventSource:
    """Minimal on/emit registry shared by links and connections."""

    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event: str, handler: Callable) -> Callable:
        self._handlers[event].append(handler)
        return handler

    def remove_all_listeners(self):
        self._handlers.clear()

    def emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                # a failing handler does not stop delivery to the rest
                logger.error(f"Error in {event} handler: {e}", exc_info=True)


class DataConnection(EventSource, ABC):
    """A direct channel to one remote peer.

    Events: "open", "data" (payload), "close", "error" (exception).
    """

    def __init__(self, peer: str):
        super().__init__()
        self.peer = peer
        self.open = False
        self.closed = False

    @abstractmethod
    def send(self, data: Any):
        ...

    @abstractmethod
    def close(self):
        ...


class PeerLink(EventSource, ABC):
    """The local endpoint registered with a direct-connection broker under one peer id.

    Events: "open" (id), "connection" (DataConnection), "disconnected",
    "error" (exception), "close".
    """

    def __init__(self, peer_id: str):
        super().__init__()
        self.id = peer_id
        self.open = False
        self.disconnected = False
        self.destroyed = False

    @abstractmethod
    async def start(self):
        """Register with the broker. Raises SignalingConnectionError on failure."""

    @abstractmethod
    def connect(self, peer_id: str) -> DataConnection:
        """Begin a connection attempt; the returned connection emits "open" once established."""

    @abstractmethod
    async def reconnect(self):
        """Re-register in place after a disconnect, keeping the same id."""

    @abstractmethod
    async def destroy(self):
        ...
