from __future__ import annotations

import datetime as dt
import time
from collections.abc import Callable

from ..errors import DeadlineExceededError, InvalidArgumentError

Clock = Callable[[], dt.datetime]


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def to_iso(value: dt.datetime) -> str:
    # Fixed precision keeps lexical order equal to chronological order in SQL.
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC).isoformat(timespec="microseconds")


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def normalize_timestamp(value: str | dt.datetime | None, *, field: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return to_iso(value)
    parsed = parse_iso8601(value)
    if parsed is None:
        raise InvalidArgumentError(f"{field} must be an ISO-8601 timestamp, got {value!r}")
    return to_iso(parsed)


class Deadline:
    """Monotonic deadline for long-running store calls; `None` never expires."""

    def __init__(self, timeout_s: float | None) -> None:
        if timeout_s is not None and timeout_s < 0:
            raise InvalidArgumentError("timeout_s must be >= 0")
        self.timeout_s = timeout_s
        self._expires = None if timeout_s is None else time.monotonic() + timeout_s

    @property
    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceededError(f"{operation} exceeded its {self.timeout_s}s deadline")
