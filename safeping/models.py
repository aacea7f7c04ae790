"""
Core data models for the SafePing overdue check-in engine.

Schedules and assignments are owned by administrative tooling outside this
package; the engine only reads them.  Check-ins are append-only: a worker
creates ``ok`` check-ins manually, and the engine inserts automatic
``overdue`` check-ins.  Nothing here is ever mutated or deleted by the
engine.
"""

from __future__ import annotations

import enum
import re
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from safeping.clock import ensure_utc


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Frequency(str, enum.Enum):
    """How often a schedule recurs.

    * ``DAILY``  -- Monday to Friday only.
    * ``WEEKLY`` -- on the listed ``days_of_week``.
    * ``CUSTOM`` -- on the listed ``days_of_week``.
    * ``ONCE``   -- a one-off schedule with no day restriction; deactivating
      it afterwards is the administrator's job.
    """

    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"
    ONCE = "once"


class CheckInStatus(str, enum.Enum):
    OK = "ok"
    OVERDUE = "overdue"


class EpisodeType(str, enum.Enum):
    """Tag sent with every escalation request."""

    OVERDUE_CHECKIN = "overdue_checkin"
    MISSED_CHECKIN = "missed_checkin"
    EMERGENCY = "emergency"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


class Schedule(BaseModel):
    """A monitoring policy: how often assigned workers must check in, and when.

    ``start_time`` and ``end_time`` are ``HH:MM`` strings and are compared
    lexically.  Values with seconds (``HH:MM:SS``, as a database ``time``
    column returns them) are truncated to ``HH:MM``.  The active window only
    applies when both ends are set.

    A ``weekly`` or ``custom`` schedule with no ``days_of_week`` is accepted
    here and reported by ``schedule_evaluator.validate_schedule``; the engine
    treats it as never in session instead of failing the run.
    """

    schedule_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique schedule identifier.",
    )
    org_id: str = Field(
        ...,
        min_length=1,
        description="Organization that owns this schedule.",
    )
    name: str = Field(default="", description="Human-readable schedule name.")
    check_in_interval_minutes: int = Field(
        ...,
        gt=0,
        description="Minutes allowed between two check-ins.",
    )
    grace_period_minutes: int = Field(
        default=0,
        ge=0,
        description="Extra minutes after the due instant before escalation.",
    )
    start_time: Optional[str] = Field(
        default=None,
        description="Start of the daily active window (HH:MM, inclusive).",
    )
    end_time: Optional[str] = Field(
        default=None,
        description="End of the daily active window (HH:MM, inclusive).",
    )
    frequency: Frequency = Field(default=Frequency.DAILY)
    days_of_week: list[int] = Field(
        default_factory=list,
        description="Weekday numbers 1-7 (Monday=1). Used by weekly and custom schedules.",
    )
    is_active: bool = Field(default=True)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_time_of_day(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not _TIME_OF_DAY.match(v):
            raise ValueError(f"time of day must be HH:MM or HH:MM:SS, got '{v}'")
        return v[:5]

    @field_validator("days_of_week")
    @classmethod
    def weekdays_in_range(cls, v: list[int]) -> list[int]:
        bad = [d for d in v if d < 1 or d > 7]
        if bad:
            raise ValueError(f"days_of_week must contain values 1-7 (Monday=1), got {bad}")
        return v

    @property
    def has_active_window(self) -> bool:
        return bool(self.start_time and self.end_time)


class Assignment(BaseModel):
    """Links a schedule to a worker for a date range."""

    assignment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: str = Field(...)
    worker_id: str = Field(...)
    start_date: date = Field(...)
    end_date: Optional[date] = Field(default=None)
    is_active: bool = Field(default=True)

    def in_effect_on(self, day: date) -> bool:
        """Whether the assignment applies on ``day`` (both ends inclusive)."""
        if not self.is_active:
            return False
        if self.start_date > day:
            return False
        return self.end_date is None or self.end_date >= day


class Worker(BaseModel):
    """A lone worker who is expected to check in."""

    worker_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str = Field(..., min_length=1)
    first_name: str = Field(default="")
    last_name: str = Field(default="")
    email: Optional[str] = Field(default=None)
    phone: Optional[str] = Field(default=None)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.worker_id


class ScheduledAssignment(BaseModel):
    """An assignment joined with the worker it applies to."""

    assignment: Assignment
    worker: Worker


class ScheduleWithAssignments(BaseModel):
    """An active schedule together with its active assignments.

    This is the shape the data store returns when the run loads its work.
    """

    schedule: Schedule
    assignments: list[ScheduledAssignment] = Field(default_factory=list)


class CheckIn(BaseModel):
    """A single check-in event.

    Check-ins are append-only.  The latest check-in for a worker is the one
    with the greatest ``timestamp``.
    """

    check_in_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this check-in.",
    )
    worker_id: str = Field(..., description="The worker this check-in belongs to.")
    org_id: str = Field(..., description="Organization the worker belongs to.")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the check-in.",
    )
    status: CheckInStatus = Field(default=CheckInStatus.OK)
    is_manual: bool = Field(
        default=True,
        description="True when the worker checked in; False for engine-generated rows.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form data, e.g. the schedule and minutes overdue for automatic rows.",
    )

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_utc(cls, v: datetime) -> datetime:
        # Drivers often return timestamp columns without a zone; they are UTC.
        return ensure_utc(v)
