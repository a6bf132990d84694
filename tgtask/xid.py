"""Decoding of globally unique, time-ordered 12-byte task identifiers.

An identifier is 12 raw bytes written as 20 characters of a lower-case
base32-hex alphabet. The first four bytes hold the creation time as
big-endian Unix seconds.
"""

from __future__ import annotations

from datetime import datetime, timezone

ENCODED_LENGTH = 20
RAW_LENGTH = 12

_ALPHABET = "0123456789abcdefghijklmnopqrstuv"
_DECODE = {char: value for value, char in enumerate(_ALPHABET)}


def decode_xid(text: str) -> bytes:
    """Return the 12 raw bytes of an identifier, or raise ValueError."""
    if len(text) != ENCODED_LENGTH:
        raise ValueError(f"invalid ID: {text!r}")
    value = 0
    for char in text:
        try:
            value = (value << 5) | _DECODE[char]
        except KeyError:
            raise ValueError(f"invalid ID: {text!r}") from None
    # 20 characters carry 100 bits; the last 4 are padding.
    return (value >> 4).to_bytes(RAW_LENGTH, "big")


def encode_xid(raw: bytes) -> str:
    """Return the canonical 20-character form of 12 raw identifier bytes."""
    if len(raw) != RAW_LENGTH:
        raise ValueError(f"identifier must be {RAW_LENGTH} bytes, got {len(raw)}")
    value = int.from_bytes(raw, "big") << 4
    return "".join(_ALPHABET[(value >> shift) & 0x1F] for shift in range(95, -1, -5))


def xid_time(text: str) -> datetime:
    """Return the creation time embedded in an identifier, in UTC."""
    raw = decode_xid(text)
    return datetime.fromtimestamp(int.from_bytes(raw[:4], "big"), tz=timezone.utc)