"""Prefixed ULID identifiers for persisted orchestrator entities."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

WORK_ITEM_ID_PREFIX: Final[str] = "wi"
ESCALATION_ID_PREFIX: Final[str] = "esc"
WINDOW_ID_PREFIX: Final[str] = "win"
PROCESS_ID_PREFIX: Final[str] = "proc"
SNAPSHOT_ID_PREFIX: Final[str] = "snap"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]

__all__ = [
    "ESCALATION_ID_PREFIX",
    "PROCESS_ID_PREFIX",
    "SNAPSHOT_ID_PREFIX",
    "ULID_LENGTH",
    "WINDOW_ID_PREFIX",
    "WORK_ITEM_ID_PREFIX",
    "generate_escalation_id",
    "generate_prefixed_id",
    "generate_process_id",
    "generate_snapshot_id",
    "generate_ulid",
    "generate_window_id",
    "generate_work_item_id",
    "short_id",
    "validate_prefixed_id",
    "validate_ulid",
    "validate_work_item_id",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(ts_ms, int) or not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")

    raw = (secrets.token_bytes if randbytes is None else randbytes)(ULID_RANDOM_BYTES)
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(bytes(raw), "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed ULID."""
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    for index, char in enumerate(value):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    if _DECODE_TABLE[value[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate ``<prefix>-<ulid>``."""
    _validate_prefix(prefix)
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{prefix}{_PREFIX_SEPARATOR}{ulid}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _validate_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}' (got {id_str!r})")
    try:
        validate_ulid(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if len(id_str) < 8:
        return id_str
    return id_str[-8:]


def generate_work_item_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(WORK_ITEM_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_work_item_id(id_str: str) -> None:
    validate_prefixed_id(id_str, WORK_ITEM_ID_PREFIX)


def generate_escalation_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(ESCALATION_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_window_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(WINDOW_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_process_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(PROCESS_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_snapshot_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(SNAPSHOT_ID_PREFIX, timestamp_ms=timestamp_ms)


def _validate_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")
