"""Cron repeat patterns for recurring jobs.

Patterns are standard five-field crontab expressions parsed by APScheduler's
``CronTrigger``. Fire times are evaluated in ``QUEUE_SETTINGS["repeat_timezone"]``,
or in the server's local timezone when that is unset.
"""
from __future__ import annotations

from datetime import datetime, timedelta, tzinfo
from typing import Optional, Union

from apscheduler.triggers.cron import CronTrigger

from clinicore.config import QUEUE_SETTINGS


class InvalidRepeatPattern(ValueError):
    """Repeat pattern is not a valid crontab expression."""


def cron_trigger(pattern: str, tz: Optional[Union[str, tzinfo]] = None) -> CronTrigger:
    timezone = tz if tz is not None else QUEUE_SETTINGS.get("repeat_timezone") or None
    try:
        return CronTrigger.from_crontab(pattern, timezone=timezone)
    except ValueError as e:
        raise InvalidRepeatPattern(f"Invalid repeat pattern {pattern!r}: {e}") from e


def next_fire_time(pattern: str, after: datetime, tz: Optional[Union[str, tzinfo]] = None) -> datetime:
    """First fire time strictly after ``after``."""
    trigger = cron_trigger(pattern, tz)
    # get_next_fire_time treats ``now`` as inclusive
    fire = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
    if fire is None:
        raise InvalidRepeatPattern(f"Repeat pattern {pattern!r} never fires")
    return fire


__all__ = ["InvalidRepeatPattern", "cron_trigger", "next_fire_time"]
