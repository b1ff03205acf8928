"""Unit tests for canonical ID helpers."""

from __future__ import annotations

import pytest

from tdd_orchestrator.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_10000() -> None:
    generated = {ids.generate_ulid() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert ulid_value == ulid_value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)

    ids.validate_ulid(ulid_value.lower())

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)

    for invalid in ["I" + "0" * 25, "l" + "0" * 25, "O" + "0" * 25, "u" + "0" * 25]:
        with pytest.raises(ValueError, match="invalid ULID character"):
            ids.validate_ulid(invalid)


def test_ulid_overflow_and_timestamp_bounds() -> None:
    ids.validate_ulid("7" + "Z" * 25)
    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    assert ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes) == "0" * 26
    with pytest.raises(ValueError, match="timestamp_ms out of range"):
        ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS + 1)
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x00" * (size - 1))


def test_ulids_sort_by_timestamp() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_zero_bytes)

    assert earlier < later


@pytest.mark.parametrize(
    ("generate", "prefix"),
    [
        (ids.generate_work_item_id, ids.WORK_ITEM_ID_PREFIX),
        (ids.generate_escalation_id, ids.ESCALATION_ID_PREFIX),
        (ids.generate_window_id, ids.WINDOW_ID_PREFIX),
        (ids.generate_process_id, ids.PROCESS_ID_PREFIX),
        (ids.generate_snapshot_id, ids.SNAPSHOT_ID_PREFIX),
    ],
)
def test_prefixed_generators(generate, prefix: str) -> None:
    value = generate(timestamp_ms=1)

    assert value.startswith(f"{prefix}-")
    ids.validate_prefixed_id(value, prefix)


def test_validate_prefixed_id_errors() -> None:
    window_id = ids.generate_window_id()

    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_work_item_id(window_id)
    with pytest.raises(ValueError, match="invalid ULID part"):
        ids.validate_work_item_id("wi-not-a-ulid")
    with pytest.raises(ValueError, match="must not contain"):
        ids.generate_prefixed_id("a-b")
    with pytest.raises(ValueError, match="non-empty"):
        ids.generate_prefixed_id("")


def test_short_id() -> None:
    assert ids.short_id("wi-01HZY0000000000000ABCDEFGH") == "ABCDEFGH"
    assert ids.short_id("abc") == "abc"
