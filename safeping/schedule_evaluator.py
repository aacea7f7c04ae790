"""
Schedule Evaluator -- is a monitoring schedule in session right now?

Two calendar rules hold throughout:

* Weekdays are numbered 1 (Monday) to 7 (Sunday).  A Sunday-first weekday
  number of 0 is remapped to 7.
* A ``daily`` schedule only runs Monday to Friday.

A ``once`` schedule has no day restriction.  The active window compares
``HH:MM`` strings lexically, both ends inclusive, and only applies when the
schedule sets both ``start_time`` and ``end_time``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from safeping.models import Frequency, Schedule

logger = logging.getLogger(__name__)

_DAY_GATED = (Frequency.WEEKLY, Frequency.CUSTOM)


def iso_weekday(now: datetime) -> int:
    """Weekday number for ``now`` with Monday=1 and Sunday=7.

    Computed from a Sunday=0 numbering, with Sunday moved to the end of the
    week.
    """
    sunday_first = (now.weekday() + 1) % 7
    return 7 if sunday_first == 0 else sunday_first


def time_of_day(now: datetime) -> str:
    return now.strftime("%H:%M")


def validate_schedule(schedule: Schedule) -> list[str]:
    """Return the configuration problems that keep a schedule out of session.

    An empty list means the schedule is well formed.
    """
    problems: list[str] = []
    if schedule.frequency in _DAY_GATED and not schedule.days_of_week:
        problems.append(
            f"frequency '{schedule.frequency.value}' requires a non-empty days_of_week"
        )
    if bool(schedule.start_time) != bool(schedule.end_time):
        # Not fatal: the window is only enforced when both ends are set.
        logger.debug(
            "Schedule %s has only one end of its active window; window ignored",
            schedule.schedule_id,
        )
    return problems


def is_in_session(schedule: Schedule, now: datetime) -> bool:
    """Decide whether ``schedule`` is in session at ``now``.

    Pure function of its arguments.  Malformed schedules are never in
    session.

    Args:
        schedule: The monitoring schedule.
        now: The instant being evaluated, in the timezone the schedule's
            window is expressed in.

    Returns:
        True if the schedule's day and time-of-day rules admit ``now``.
    """
    problems = validate_schedule(schedule)
    if problems:
        logger.warning(
            "Schedule %s (%s) is misconfigured and treated as never in session: %s",
            schedule.schedule_id,
            schedule.name,
            "; ".join(problems),
        )
        return False

    weekday = iso_weekday(now)

    if schedule.frequency in _DAY_GATED:
        if weekday not in schedule.days_of_week:
            return False
    elif schedule.frequency == Frequency.DAILY:
        if weekday > 5:
            return False

    if schedule.has_active_window:
        current = time_of_day(now)
        if current < schedule.start_time or current > schedule.end_time:
            return False

    return True
