"""Resource ID generation and the millisecond clock used for envelope timestamps."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ID_LENGTH: Final[int] = 26
ID_RANDOM_BYTES: Final[int] = 10
ID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_ID_MAX_VALUE: Final[int] = (1 << 128) - 1

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]


def get_millis() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def new_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a 26-character, time-ordered Crockford Base32 identifier."""
    ts_ms = _resolve_timestamp_ms(timestamp_ms)
    random_bytes = _resolve_random_bytes(randbytes)
    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    return _encode_crockford_base32(value, ID_LENGTH)


def validate_id(id_str: str) -> None:
    """Validate an identifier and raise ``ValueError`` with precise context on failure."""
    _ = _decode_validated_id(id_str)


def id_timestamp_ms(id_str: str) -> int:
    """Extract the 48-bit millisecond timestamp embedded in a generated ID."""
    return _decode_validated_id(id_str) >> 80


def is_valid_id(id_str: object) -> bool:
    if not isinstance(id_str, str):
        return False
    try:
        validate_id(id_str)
    except ValueError:
        return False
    return True


def _resolve_timestamp_ms(timestamp_ms: int | None) -> int:
    resolved = get_millis() if timestamp_ms is None else timestamp_ms
    if isinstance(resolved, bool) or not isinstance(resolved, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(resolved).__name__}")
    if not 0 <= resolved <= ID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ID_MAX_TIMESTAMP_MS}, got {resolved}"
        )
    return resolved


def _resolve_random_bytes(randbytes: _RandBytes | None) -> bytes:
    provider = secrets.token_bytes if randbytes is None else randbytes
    raw = provider(ID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise ValueError("randbytes must return a bytes-like object")
    as_bytes = bytes(raw)
    if len(as_bytes) != ID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ID_RANDOM_BYTES} bytes")
    return as_bytes


def _decode_validated_id(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"id must be a string, got {type(value).__name__}")
    if len(value) != ID_LENGTH:
        raise ValueError(f"id length must be {ID_LENGTH}, got {len(value)}")

    decoded = 0
    for index, char in enumerate(value):
        digit = _DECODE_TABLE.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid id character {char!r} at index {index}")
        decoded = (decoded << 5) | digit

    if decoded > _ID_MAX_VALUE:
        raise ValueError("id overflow: value exceeds 128 bits")
    return decoded


def _encode_crockford_base32(value: int, length: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")

    mask = 0b11111
    chars = ["0"] * length
    working = value
    for index in range(length - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[working & mask]
        working >>= 5

    if working != 0:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(chars)


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "ID_LENGTH",
    "ID_MAX_TIMESTAMP_MS",
    "get_millis",
    "id_timestamp_ms",
    "is_valid_id",
    "new_id",
    "validate_id",
]
