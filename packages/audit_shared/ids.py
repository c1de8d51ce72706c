"""Identifier generation for audit rows and pre-assigned entity ids.

Audit-log rows and entities whose schema declares a client-side id default
get their ids here. ULIDs are the canonical 26-char Crockford Base32 form so
audit rows sort by creation time.
"""

from __future__ import annotations

import secrets
import time
import uuid
from typing import Callable

_ULID_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_ulid(*, timestamp_ms: int | None = None) -> str:
    """Generate a new ULID string.

    Timestamp occupies the high 48 bits (milliseconds since epoch), and the
    remaining 80 bits are cryptographically secure random entropy.
    """
    ts_ms = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    if ts_ms < 0 or ts_ms >= (1 << 48):
        raise ValueError("timestamp_ms out of ULID 48-bit range")

    entropy = int.from_bytes(secrets.token_bytes(10), byteorder="big", signed=False)
    number = (ts_ms << 80) | entropy
    chars: list[str] = []
    for _ in range(26):
        number, remainder = divmod(number, 32)
        chars.append(_ULID_ALPHABET[remainder])
    return "".join(reversed(chars))


def generate_uuid() -> str:
    """Generate a random UUID4 string."""
    return str(uuid.uuid4())


ID_GENERATORS: dict[str, Callable[[], str]] = {
    "ulid": generate_ulid,
    "uuid": generate_uuid,
}


def get_id_generator(name: str | None) -> Callable[[], str] | None:
    """Return the generator registered for a schema default, if any."""
    if name is None:
        return None
    return ID_GENERATORS.get(name)
