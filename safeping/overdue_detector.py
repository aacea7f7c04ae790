"""
Overdue Detector -- how late is a worker for their next check-in?

The next check-in is due one ``check_in_interval`` after the latest
check-in.  A worker who has never checked in is treated as due one interval
ago, so they are eligible for overdue processing straight away rather than
getting a free first interval.

Lateness is truncated to whole minutes (floor, never rounded).  The grace
period has expired once the lateness is strictly greater than
``grace_period_minutes``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from safeping.models import CheckIn, CheckInStatus, Schedule

_MINUTE = timedelta(minutes=1)


class OverdueEvaluation:
    """Outcome of evaluating one worker against one schedule."""

    def __init__(
        self,
        next_due: datetime,
        overdue_by_minutes: int,
        grace_expired: bool,
        latest_check_in: Optional[CheckIn] = None,
    ) -> None:
        self.next_due = next_due
        self.overdue_by_minutes = overdue_by_minutes
        self.grace_expired = grace_expired
        self.latest_check_in = latest_check_in

    @property
    def is_overdue(self) -> bool:
        """Whether an overdue episode exists at all."""
        return self.overdue_by_minutes > 0

    @property
    def already_flagged(self) -> bool:
        """Whether the latest check-in already marks this episode overdue."""
        return (
            self.latest_check_in is not None
            and self.latest_check_in.status == CheckInStatus.OVERDUE
        )

    @property
    def needs_escalation(self) -> bool:
        """Grace expired and not yet marked overdue by a previous run."""
        return self.is_overdue and self.grace_expired and not self.already_flagged

    def __repr__(self) -> str:
        return (
            f"OverdueEvaluation(overdue_by_minutes={self.overdue_by_minutes}, "
            f"grace_expired={self.grace_expired}, next_due={self.next_due.isoformat()})"
        )


def next_due_instant(
    schedule: Schedule,
    latest_check_in: Optional[CheckIn],
    now: datetime,
) -> datetime:
    interval = timedelta(minutes=schedule.check_in_interval_minutes)
    if latest_check_in is None:
        return now - interval
    return latest_check_in.timestamp + interval


def evaluate_overdue(
    schedule: Schedule,
    latest_check_in: Optional[CheckIn],
    now: datetime,
) -> OverdueEvaluation:
    """Work out whether the worker behind ``latest_check_in`` is overdue.

    Args:
        schedule: The schedule the worker is assigned to.
        latest_check_in: The worker's most recent check-in, or None if they
            have never checked in.
        now: The evaluation instant.

    Returns:
        An ``OverdueEvaluation``.  ``overdue_by_minutes`` is only meaningful
        when positive; zero or less means the worker is not overdue.
    """
    due = next_due_instant(schedule, latest_check_in, now)
    overdue_by = (now - due) // _MINUTE
    return OverdueEvaluation(
        next_due=due,
        overdue_by_minutes=overdue_by,
        grace_expired=overdue_by > schedule.grace_period_minutes,
        latest_check_in=latest_check_in,
    )
