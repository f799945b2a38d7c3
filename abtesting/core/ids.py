import secrets
import time

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(_ALPHABET[remainder])
        if number == 0:
            break
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """``<prefix>_<base36 ms timestamp><6 random base36 chars>``, e.g. ``test_m1x2y3abc123``."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{prefix}_{_base36(time.time_ns() // 1_000_000)}{suffix}"
