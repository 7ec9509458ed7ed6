import re
import secrets
import random
from typing import Optional

from constants import JOIN_CODE_ALPHABET, JOIN_CODE_LENGTH

_JOIN_CODE_RE = re.compile(rf"^[{JOIN_CODE_ALPHABET}]{{{JOIN_CODE_LENGTH}}}$", re.IGNORECASE)
_ROOM_ID_RE = re.compile(rf"^[{JOIN_CODE_ALPHABET}]{{4}}-[{JOIN_CODE_ALPHABET}]{{4}}$", re.IGNORECASE)


def generate_join_code(length: int = JOIN_CODE_LENGTH) -> str:
    """Draw a join code uniformly from the unambiguous alphabet."""
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def generate_room_id() -> str:
    # Room ids are public, only the join code is secret
    first = "".join(random.choices(JOIN_CODE_ALPHABET, k=4))
    second = "".join(random.choices(JOIN_CODE_ALPHABET, k=4))
    return f"{first}-{second}"


def is_valid_join_code(value: Optional[str]) -> bool:
    return bool(value) and bool(_JOIN_CODE_RE.match(value))


def is_valid_room_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_ROOM_ID_RE.match(value))


def join_codes_match(expected: Optional[str], offered: Optional[str]) -> bool:
    """Case-insensitive comparison; a missing code on either side never matches."""
    if not expected or not offered:
        return False
    return secrets.compare_digest(expected.lower().encode("utf-8"), offered.lower().encode("utf-8"))
