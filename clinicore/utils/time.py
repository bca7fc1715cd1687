"""Time utilities (UTC now, epoch millis, tz normalisation, elapsed formatting)."""
from __future__ import annotations
from datetime import datetime, timezone, timedelta

DAY_MS = 24 * 60 * 60 * 1000

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)

def days_before(now: datetime, days: int | float) -> datetime:
    return now - timedelta(milliseconds=days * DAY_MS)

def start_of_month(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

__all__ = ["DAY_MS", "utc_now", "ensure_utc", "epoch_ms", "days_before", "start_of_month", "format_elapsed"]
