"""
Internal id generation.

Internal ids have the form ``is-{26 chars}``: a ULID (48-bit millisecond
timestamp followed by 80 random bits) encoded in lowercase Crockford
base32. Ids created later sort later, which the display-id mapper relies
on to break short-id collisions the same way on every replica.

Example:
    >>> new_internal_id()
    'is-01hx5zzkbkactav9wevgemmvrz'
"""

from __future__ import annotations

import secrets
import time

INTERNAL_ID_PREFIX = "is-"

# Crockford base32, lowercase (no i, l, o, u)
CROCKFORD_ALPHABET = "0123456789abcdefghjkmnpqrstvwxyz"

TIME_CHARS = 10
RANDOM_CHARS = 16


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(timestamp_ms: int | None = None) -> str:
    """
    Generate a lowercase ULID string.

    Args:
        timestamp_ms: Milliseconds since the epoch. Defaults to now.

    Returns:
        26-character lowercase Crockford base32 string.
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    if timestamp_ms < 0 or timestamp_ms >= 1 << 48:
        raise ValueError(f"Timestamp out of ULID range: {timestamp_ms}")
    randomness = secrets.randbits(80)
    return _encode(timestamp_ms, TIME_CHARS) + _encode(randomness, RANDOM_CHARS)


def new_internal_id(timestamp_ms: int | None = None) -> str:
    """Generate a new internal record id."""
    return INTERNAL_ID_PREFIX + new_ulid(timestamp_ms)
