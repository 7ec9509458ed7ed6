class CastmeshError(Exception):
    """Base class for every error raised by the session and mesh layers."""


class PreconditionError(CastmeshError):
    """The operation was called in a state where it can never succeed. Not retried."""


class IdentityRequired(PreconditionError):
    pass


class PeerNotConnected(PreconditionError):
    pass


class UnknownPeer(PreconditionError):
    def __init__(self, peer_id: str):
        super().__init__(f"connection {peer_id} not found")
        self.peer_id = peer_id


class NoActiveRoom(PreconditionError):
    pass


class SignalingConnectionError(CastmeshError):
    pass


class OperationTimeout(CastmeshError):
    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} timed out after {seconds}s")
        self.operation = operation
        self.seconds = seconds


class ReconnectTimedOut(CastmeshError):
    def __init__(self, attempts: int):
        super().__init__("Reconnect timed out")
        self.attempts = attempts
