"""Booking reference generation and parsing.

References look like ``AR1760870400000F3A91C04D2``: the ``AR`` prefix, the
13-digit creation time in epoch milliseconds, then 10 uppercase hex digits of
randomness. Uniqueness comes from the random suffix alone, so generation needs
no shared counter and is safe to call from any number of tasks at once.
"""

import re
import secrets
import time
from datetime import datetime, timezone

BOOKING_ID_PREFIX = "AR"
TIMESTAMP_DIGITS = 13
SUFFIX_HEX_DIGITS = 10

BOOKING_ID_RE = re.compile(rf"^{BOOKING_ID_PREFIX}\d{{{TIMESTAMP_DIGITS}}}[A-F0-9]{{{SUFFIX_HEX_DIGITS}}}$")
_SEPARATORS_RE = re.compile(r"[\s\-]")


def generate_booking_id(now_ms: int | None = None) -> str:
    timestamp_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    suffix = secrets.token_hex(SUFFIX_HEX_DIGITS // 2).upper()
    return f"{BOOKING_ID_PREFIX}{timestamp_ms:0{TIMESTAMP_DIGITS}d}{suffix}"


def is_valid_booking_id(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return BOOKING_ID_RE.match(value) is not None


def format_booking_id(value: str) -> str:
    """Insert separators for display: ``AR-1760-8704-00000-F3A91C04D2``."""
    if not is_valid_booking_id(value):
        return value
    digits = value[len(BOOKING_ID_PREFIX) : len(BOOKING_ID_PREFIX) + TIMESTAMP_DIGITS]
    suffix = value[len(BOOKING_ID_PREFIX) + TIMESTAMP_DIGITS :]
    return "-".join([BOOKING_ID_PREFIX, digits[:4], digits[4:8], digits[8:], suffix])


def normalize_booking_id(value: str) -> str:
    return _SEPARATORS_RE.sub("", value or "").upper()


def booking_id_timestamp(value: str) -> datetime | None:
    if not is_valid_booking_id(value):
        return None
    timestamp_ms = int(value[len(BOOKING_ID_PREFIX) : len(BOOKING_ID_PREFIX) + TIMESTAMP_DIGITS])
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
