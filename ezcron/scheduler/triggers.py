"""
Trigger computation — the next instant a schedule fires.

Usage:
    nxt = next_trigger(CronSchedule("0 9 * * 1-5"), now=datetime.now().astimezone())
    label = describe(schedule)          # "cron(0 9 * * 1-5)"
    validate_schedule(schedule)         # raises ScheduleComputeError

All returned instants are timezone-aware local datetimes strictly after
``now``. A naive ``now`` is read as local time. Calendar arithmetic is
done on wall-clock time and each candidate is converted back to an aware
instant, so a candidate on the far side of a DST change gets its own offset.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from ezcron.core.errors import ScheduleComputeError
from ezcron.scheduler.job import CronSchedule, Repeat, Schedule, SimpleSchedule

# Reference instant used to check cron expressions that parse but never match
# (e.g. "0 0 30 2 *").
_CRON_PROBE = datetime(2000, 1, 1)


def next_trigger(schedule: Schedule, now: datetime) -> datetime | None:
    """
    Return the next trigger instant strictly after ``now``.

    Returns None when the schedule has no further trigger: an elapsed
    ``once``, or a cron expression that cannot fire (never reached for
    validated jobs).
    """
    now = _aware(now)
    if isinstance(schedule, CronSchedule):
        return _next_cron(schedule.expression, now)
    if isinstance(schedule, SimpleSchedule):
        return _next_simple(schedule, now)
    raise ScheduleComputeError(f"Unknown schedule type: {type(schedule).__name__}")


def validate_schedule(schedule: Schedule) -> None:
    """Raise ScheduleComputeError if the schedule can never be computed."""
    if isinstance(schedule, CronSchedule):
        _validate_cron(schedule.expression)
        return
    if not isinstance(schedule, SimpleSchedule):
        raise ScheduleComputeError(f"Unknown schedule type: {type(schedule).__name__}")

    repeat = schedule.repeat
    if repeat is Repeat.DAILY:
        parse_hhmm(schedule.time)
    elif repeat is Repeat.WEEKLY:
        parse_hhmm(schedule.time)
        if schedule.weekday is None:
            raise ScheduleComputeError("weekday is required for weekly")
        if not 1 <= schedule.weekday <= 7:
            raise ScheduleComputeError("weekday must be between 1 and 7")
    elif repeat is Repeat.MONTHLY:
        parse_hhmm(schedule.time)
        if schedule.day is None:
            raise ScheduleComputeError("day is required for monthly")
        if not 1 <= schedule.day <= 31:
            raise ScheduleComputeError("day must be between 1 and 31")
    elif repeat is Repeat.EVERYMINUTE:
        if schedule.time is not None:
            raise ScheduleComputeError("time is not allowed for everyminute")
    elif repeat is Repeat.ONCE:
        if schedule.once_at is None:
            raise ScheduleComputeError("once_at is required for once")
    else:
        raise ScheduleComputeError(f"Unknown repeat: {repeat!r}")


def describe(schedule: Schedule) -> str:
    """Human-readable label, e.g. 'daily@09:00' or 'cron(*/5 * * * *)'."""
    if isinstance(schedule, CronSchedule):
        return f"cron({schedule.expression})"
    repeat = schedule.repeat
    t = schedule.time or "-"
    if repeat is Repeat.DAILY:
        return f"daily@{t}"
    if repeat is Repeat.WEEKLY:
        return f"weekly({schedule.weekday})@{t}"
    if repeat is Repeat.MONTHLY:
        return f"monthly({schedule.day})@{t}"
    if repeat is Repeat.EVERYMINUTE:
        return "every-minute"
    at = schedule.once_at.strftime("%Y-%m-%d %H:%M:%S") if schedule.once_at else "-"
    return f"once@{at}"


def parse_hhmm(value: str | None) -> time:
    """Parse a strict 'HH:MM' string."""
    if value is None:
        raise ScheduleComputeError("time is required")
    parts = value.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ScheduleComputeError(f"time must be HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if hour > 23 or minute > 59:
        raise ScheduleComputeError(f"time out of range: {value!r}")
    return time(hour, minute)


# ━━━ Cron ━━━


def _validate_cron(expression: str) -> None:
    if len(expression.split()) != 5:
        raise ScheduleComputeError(
            f"cron expression must have 5 fields, got {expression!r}"
        )
    try:
        croniter(expression, _CRON_PROBE).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError, ValueError, KeyError) as e:
        raise ScheduleComputeError(f"invalid cron expression {expression!r}: {e}") from e


def _next_cron(expression: str, now: datetime) -> datetime | None:
    # croniter keeps the standard OR between restricted day-of-month and
    # day-of-week (day_or=True).
    try:
        it = croniter(expression, _wall(now), day_or=True)
        for _ in range(4):
            candidate = _instant(it.get_next(datetime))
            if candidate > now:
                return candidate
    except (CroniterBadCronError, CroniterBadDateError, ValueError, KeyError):
        return None
    return None


# ━━━ Simple ━━━


def _next_simple(schedule: SimpleSchedule, now: datetime) -> datetime | None:
    repeat = schedule.repeat
    if repeat is Repeat.EVERYMINUTE:
        return _next_every_minute(now)
    if repeat is Repeat.ONCE:
        if schedule.once_at is None:
            raise ScheduleComputeError("once_at is required for once")
        once_at = _aware(schedule.once_at)
        return once_at if once_at > now else None

    at = parse_hhmm(schedule.time)
    if repeat is Repeat.DAILY:
        return _next_daily(now, at)
    if repeat is Repeat.WEEKLY:
        return _next_weekly(now, at, schedule.weekday or 0)
    if repeat is Repeat.MONTHLY:
        return _next_monthly(now, at, schedule.day or 0)
    raise ScheduleComputeError(f"Unknown repeat: {repeat!r}")


def _next_every_minute(now: datetime) -> datetime:
    boundary = _wall(now).replace(second=0, microsecond=0) + timedelta(minutes=1)
    return _instant(boundary)


def _next_daily(now: datetime, at: time) -> datetime:
    today = _wall(now).date()
    for offset in range(3):
        candidate = _at(today + timedelta(days=offset), at)
        if candidate > now:
            return candidate
    raise ScheduleComputeError("daily schedule did not resolve")


def _next_weekly(now: datetime, at: time, weekday: int) -> datetime:
    if not 1 <= weekday <= 7:
        raise ScheduleComputeError("weekday must be between 1 and 7")
    today = _wall(now).date()
    for offset in range(15):
        d = today + timedelta(days=offset)
        if d.isoweekday() != weekday:
            continue
        candidate = _at(d, at)
        if candidate > now:
            return candidate
    raise ScheduleComputeError("weekly schedule did not resolve")


def _next_monthly(now: datetime, at: time, day: int) -> datetime:
    if not 1 <= day <= 31:
        raise ScheduleComputeError("day must be between 1 and 31")
    wall = _wall(now)
    year, month = wall.year, wall.month
    for _ in range(48):
        # Months without the target day are skipped, not clamped.
        if day <= calendar.monthrange(year, month)[1]:
            candidate = _at(date(year, month, day), at)
            if candidate > now:
                return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    raise ScheduleComputeError("monthly schedule did not resolve")


# ━━━ Time helpers ━━━


def _aware(dt: datetime) -> datetime:
    """Aware local datetime; naive input is read as local wall-clock time."""
    return dt.astimezone()


def _wall(dt: datetime) -> datetime:
    """Local wall-clock (naive) view of an aware instant."""
    return dt.astimezone().replace(tzinfo=None)


def _instant(wall: datetime) -> datetime:
    """Aware instant for a local wall-clock time."""
    return wall.astimezone()


def _at(d: date, at: time) -> datetime:
    return _instant(datetime.combine(d, at))
