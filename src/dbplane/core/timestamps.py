"""
ULID generation and UTC timestamp helpers.

Every persisted timestamp in dbplane is naive UTC: SQLite drops tzinfo on the
way back out, so comparisons only stay sound when both sides are naive.
``utc_now()`` is the single place that strips it.
"""

import random
import time
from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Current UTC wall time without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


def generate_ulid() -> str:
    """
    Generate a ULID-like identifier.

    26 characters of Crockford base32: a 48-bit millisecond timestamp followed
    by 80 random bits, so identifiers sort by creation time.
    """
    timestamp_chars = _encode_base32(int(time.time() * 1000), 10)
    random_part = "".join(random.choices(_ENCODING, k=16))
    return timestamp_chars + random_part


def to_iso8601(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    if s is None:
        return None
    return datetime.fromisoformat(s)


_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def _encode_base32(value: int, length: int) -> str:
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))


class SystemClock:
    """Clock backed by the wall clock. Machines read time only through a clock."""

    def now(self) -> datetime:
        return utc_now()


class FrozenClock:
    """Manually advanced clock for deterministic runs."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utc_now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now
