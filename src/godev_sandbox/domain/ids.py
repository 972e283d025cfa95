"""Execution identifiers: ``exec-<ULID>``, sortable by creation time in log files."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
EXECUTION_ID_PREFIX: Final[str] = "exec-"

_ENTROPY_BYTES: Final[int] = 10


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """Return 48 bits of milliseconds and 80 random bits as 26 Crockford Base32 chars."""

    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {millis}")
    entropy = (randbytes or secrets.token_bytes)(_ENTROPY_BYTES)
    if len(entropy) != _ENTROPY_BYTES:
        raise ValueError(f"randbytes must return exactly {_ENTROPY_BYTES} bytes")
    value = (millis << 80) | int.from_bytes(entropy, "big")
    return "".join(
        CROCKFORD_BASE32_ALPHABET[(value >> shift) & 0x1F]
        for shift in range(5 * (ULID_LENGTH - 1), -1, -5)
    )


def generate_execution_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    return EXECUTION_ID_PREFIX + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EXECUTION_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "generate_execution_id",
    "generate_ulid",
]
