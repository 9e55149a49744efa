"""UTC time helpers. All persisted timestamps are ISO-8601 UTC strings."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def minutes_from(ts: datetime, minutes: float) -> datetime:
    return ts + timedelta(minutes=minutes)


def epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)
