from pydantic import BaseModel
from typing import Any, Optional


class SignalEnvelope(BaseModel):
    event: str
    data: Optional[Any] = None


class SetIdRequest(BaseModel):
    id: Optional[str] = None


class JoinRequest(BaseModel):
    room: Optional[str] = None
    myBroadcast: Optional[bool] = False


class RelayMessage(BaseModel):
    user: Optional[str] = None
    message: Optional[Any] = None
    room: Optional[str] = None

    def is_routable(self) -> bool:
        return bool(self.user and self.message and self.room)


class EndBroadcastRequest(BaseModel):
    room: str
