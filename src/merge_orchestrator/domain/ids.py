"""
Identifiers for orchestration runs, merge attempts and audit events.

Every id is ``<prefix>-<ulid>``: a short kind prefix and a 26-character
Crockford base32 ULID (48-bit millisecond timestamp, 80 random bits). ULIDs
sort by creation time, so a replayed audit trail orders naturally by event id.

Clock and entropy are injectable (``timestamp_ms``, ``randbytes``) so tests
can pin ids exactly.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

_RANDOM_BITS: Final[int] = 80
_RANDOM_BYTES: Final[int] = _RANDOM_BITS // 8
_MAX_ULID: Final[int] = (1 << 128) - 1
_SEPARATOR: Final[str] = "-"
_DIGIT_OF: Final[dict[str, int]] = {char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)}

RandBytes = Callable[[int], bytes]


class IdKind(StrEnum):
    """Entity kinds and their id prefixes."""

    RUN = "orc"
    ATTEMPT = "att"
    EVENT = "evt"


RUN_ID_PREFIX: Final[str] = IdKind.RUN.value
ATTEMPT_ID_PREFIX: Final[str] = IdKind.ATTEMPT.value
EVENT_ID_PREFIX: Final[str] = IdKind.EVENT.value


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    now_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(now_ms, bool) or not isinstance(now_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(now_ms).__name__}")
    if not 0 <= now_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {now_ms}")

    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if not isinstance(entropy, (bytes, bytearray, memoryview)) or len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (now_ms << _RANDOM_BITS) | int.from_bytes(bytes(entropy), "big")
    digits = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def validate_ulid(s: str) -> None:
    """Raise ``ValueError`` unless ``s`` is a well-formed ULID (case-insensitive)."""

    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(s)}")
    value = 0
    for position, char in enumerate(s.upper()):
        if char not in _DIGIT_OF:
            raise ValueError(f"invalid ULID character {s[position]!r} at index {position}")
        value = value * 32 + _DIGIT_OF[char]
    # 26 base32 digits hold 130 bits; a ULID uses 128.
    if value > _MAX_ULID:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    _check_prefix(prefix)
    return prefix + _SEPARATOR + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    prefix, separator, ulid = id_str.partition(_SEPARATOR)
    if prefix != expected_prefix or not separator:
        raise ValueError(f"expected prefix '{expected_prefix}{_SEPARATOR}'")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def new_id(kind: IdKind, *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return generate_prefixed_id(kind.value, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return new_id(IdKind.RUN, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_attempt_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return new_id(IdKind.ATTEMPT, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_event_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return new_id(IdKind.EVENT, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_run_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.RUN.value)


def validate_attempt_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.ATTEMPT.value)


def validate_event_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.EVENT.value)


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")


__all__ = [
    "ATTEMPT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "IdKind",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "generate_attempt_id",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_ulid",
    "new_id",
    "validate_attempt_id",
    "validate_event_id",
    "validate_prefixed_id",
    "validate_run_id",
    "validate_ulid",
]
