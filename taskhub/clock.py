"""
Clock collaborator.

All duration math in the engine is a function of two instants plus stored
state. The current instant is always obtained through a Clock so tests can
pin it.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (a trailing 'Z' is accepted) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


def format_instant(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_aware(value).isoformat()


class Clock:
    """Supplies the current instant."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock, UTC."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock(Clock):
    """
    Deterministic clock for tests and replays.

    The instant only moves when `advance()` or `set()` is called.
    """

    def __init__(self, instant: datetime):
        self._instant = ensure_aware(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = ensure_aware(instant)

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        """Move the clock forward and return the new instant."""
        self._instant = self._instant + timedelta(seconds=seconds, **kwargs)
        return self._instant
