from pydantic import BaseModel
from typing import Any, Optional

FORWARDED_TYPES = ("connect", "accept", "data", "close")


class PeerFrame(BaseModel):
    type: str
    dst: Optional[str] = None
    src: Optional[str] = None
    connectionId: Optional[str] = None
    payload: Optional[Any] = None
