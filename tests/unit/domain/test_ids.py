"""Unit tests for run, attempt, and event ID helpers."""

from __future__ import annotations

import pytest

from merge_orchestrator.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_5000() -> None:
    generated = {ids.generate_ulid() for _ in range(5_000)}
    assert len(generated) == 5_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert ulid_value == ulid_value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)

    ids.validate_ulid(ulid_value.lower())

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)

    for invalid in ["I" + "0" * 25, "O" + "0" * 25, "u" + "0" * 25, "*" + "0" * 25]:
        with pytest.raises(ValueError, match="invalid ULID character"):
            ids.validate_ulid(invalid)


def test_ulid_overflow_and_timestamp_boundaries() -> None:
    ids.validate_ulid("7" + "Z" * 25)

    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    assert ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes) == "0" * 26

    with pytest.raises(ValueError, match="timestamp_ms out of range"):
        ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS + 1)


def test_ulids_sort_by_timestamp() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_zero_bytes)

    assert earlier < later


def test_randbytes_contract_is_enforced() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x00" * (size - 1))


def test_prefixed_id_helpers() -> None:
    run_id = ids.generate_run_id(timestamp_ms=1, randbytes=_ff_bytes)
    attempt_id = ids.generate_attempt_id(timestamp_ms=1, randbytes=_ff_bytes)
    event_id = ids.generate_event_id(timestamp_ms=1, randbytes=_ff_bytes)

    assert run_id.startswith("orc-")
    assert attempt_id.startswith("att-")
    assert event_id.startswith("evt-")
    ids.validate_run_id(run_id)
    ids.validate_attempt_id(attempt_id)
    ids.validate_event_id(event_id)

    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_event_id(run_id)

    with pytest.raises(ValueError, match="invalid ULID part for prefix 'evt'"):
        ids.validate_event_id("evt-not-a-ulid")


@pytest.mark.parametrize("prefix", ["", "my-run"])
def test_invalid_prefixes_are_rejected(prefix: str) -> None:
    with pytest.raises(ValueError, match="prefix"):
        ids.generate_prefixed_id(prefix)


def test_new_id_uses_the_kind_prefix() -> None:
    first = ids.new_id(ids.IdKind.ATTEMPT, timestamp_ms=5, randbytes=_zero_bytes)

    assert first == "att-" + "0" * 24 + "05"
    ids.validate_attempt_id(first)
