from __future__ import annotations

import datetime as dt
from typing import Any, Optional


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def utcnow() -> dt.datetime:
    """Naive UTC now; the mirror stores naive UTC timestamps."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def from_unix(raw: Any) -> Optional[dt.datetime]:
    """Chain timestamps (seconds) to naive UTC, ``None`` for zero/empty."""
    value = as_int(raw)
    if not value:
        return None
    return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc).replace(tzinfo=None)


def as_int(raw: Any) -> Optional[int]:
    """Coerce *raw* to ``int``, returning ``None`` on failure."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    text = str(raw).strip()
    if not text:
        return None
    try:
        return int(text, 0) if text.lower().startswith("0x") else int(text)
    except ValueError:
        return None


def amount_str(raw: Any) -> str:
    """Integer token amount as a decimal string (no float round trip)."""
    value = as_int(raw)
    if value is None:
        raise ValueError(f"invalid_amount:{raw!r}")
    if value < 0:
        raise ValueError("amount_cannot_be_negative")
    return str(value)


def lower_address(raw: Any) -> str:
    return str(raw or "").strip().lower()


def address_to_bytes32(address: str) -> str:
    """Left-pad a 20-byte address to a 0x-prefixed bytes32 hex string."""
    text = lower_address(address)
    if text.startswith("0x"):
        text = text[2:]
    if len(text) != 40:
        raise ValueError(f"invalid_address:{address}")
    bytes.fromhex(text)
    return "0x" + text.rjust(64, "0")


def to_hex(raw: Any) -> str:
    """Bytes / HexBytes / str to a 0x-prefixed lower-case hex string."""
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return "0x" + bytes(raw).hex()
    text = str(raw).strip()
    if not text:
        return ""
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def truncate(text: str, limit: int = 256) -> str:
    text = str(text)
    return text if len(text) <= limit else text[:limit]


def hex_to_bytes(text: str) -> bytes:
    raw = text[2:] if text.startswith("0x") else text
    return bytes.fromhex(raw)
