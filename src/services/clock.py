"""Time sources injected into the review scheduler."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current instant."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the host's wall time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
