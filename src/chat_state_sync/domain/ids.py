"""Client-side identifiers for conversations and messages."""

import secrets
import time

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_id() -> str:
    """Time-ordered prefix plus 64 random bits, both base36 encoded."""
    return _base36(time.time_ns()) + _base36(secrets.randbits(64)).rjust(13, "0")
