"""Unit tests for resource ID helpers."""

from __future__ import annotations

import pytest

from fleetstate.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_new_id_no_collision_10000() -> None:
    generated = {ids.new_id() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_id_charset_length_and_case_insensitive_validation() -> None:
    value = ids.new_id(timestamp_ms=123_456, randbytes=_ff_bytes)

    assert len(value) == ids.ID_LENGTH
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in value)
    ids.validate_id(value.lower())

    with pytest.raises(ValueError, match="id length must be"):
        ids.validate_id("0" * 25)
    for invalid in ("I" + "0" * 25, "u" + "0" * 25, "*" + "0" * 25):
        with pytest.raises(ValueError, match="invalid id character"):
            ids.validate_id(invalid)


def test_ids_sort_by_embedded_timestamp() -> None:
    earlier = ids.new_id(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.new_id(timestamp_ms=1_001, randbytes=_zero_bytes)

    assert earlier < later
    assert ids.id_timestamp_ms(earlier) == 1_000
    assert ids.id_timestamp_ms(later) == 1_001


def test_overflow_and_timestamp_boundaries() -> None:
    ids.validate_id("7" + "Z" * 25)
    with pytest.raises(ValueError, match="overflow"):
        ids.validate_id("8" + "0" * 25)

    top = ids.new_id(timestamp_ms=ids.ID_MAX_TIMESTAMP_MS, randbytes=_zero_bytes)
    assert ids.id_timestamp_ms(top) == ids.ID_MAX_TIMESTAMP_MS

    with pytest.raises(ValueError, match="out of range"):
        ids.new_id(timestamp_ms=ids.ID_MAX_TIMESTAMP_MS + 1)
    with pytest.raises(ValueError, match="must be an int"):
        ids.new_id(timestamp_ms=True)


def test_random_source_must_return_exact_length() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.new_id(randbytes=lambda size: b"\x00" * (size - 1))
    with pytest.raises(ValueError, match="bytes-like"):
        ids.new_id(randbytes=lambda size: "0" * size)  # type: ignore[arg-type,return-value]


@pytest.mark.parametrize("value", [None, 12, "", "short"])
def test_is_valid_id_never_raises(value: object) -> None:
    assert ids.is_valid_id(value) is False


def test_get_millis_is_monotonic_enough_for_timestamps() -> None:
    first = ids.get_millis()
    second = ids.get_millis()

    assert first > 1_600_000_000_000
    assert second >= first
