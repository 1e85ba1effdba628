"""
Room identifiers and join tokens.

Both are fixed-length strings over ``[a-z0-9]`` drawn from the operating
system's CSPRNG. A single random byte is drawn per symbol and values at or
above the largest multiple of 36 that fits in a byte are thrown away, so every
symbol is equally likely even though 256 is not divisible by 36.
"""
import re
import secrets

from .config import ID_ALPHABET, ID_LENGTH, TOKEN_LENGTH

_ROOM_RE = re.compile(r"[a-z0-9]{%d}" % ID_LENGTH)
_TOKEN_RE = re.compile(r"[a-z0-9]{%d}" % TOKEN_LENGTH)


def secure_random_index(upper: int) -> int:
    """Return an unbiased random integer in ``[0, upper)``."""
    if not 0 < upper <= 256:
        raise ValueError(f"upper bound must be in 1..256, got {upper}")
    max_unbiased = (256 // upper) * upper
    while True:
        value = secrets.token_bytes(1)[0]
        if value < max_unbiased:
            return value % upper


def _random_string(length: int) -> str:
    return "".join(ID_ALPHABET[secure_random_index(len(ID_ALPHABET))] for _ in range(length))


def generate_id() -> str:
    return _random_string(ID_LENGTH)


def generate_token() -> str:
    return _random_string(TOKEN_LENGTH)


def is_valid_room_id(value) -> bool:
    return isinstance(value, str) and _ROOM_RE.fullmatch(value) is not None


def is_valid_token(value) -> bool:
    return isinstance(value, str) and _TOKEN_RE.fullmatch(value) is not None
