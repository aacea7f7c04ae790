"""
Data-access interface for the overdue check-in engine.

The engine never reaches for a global database client.  Every component
receives a ``DataStore`` explicitly, which keeps the engine testable against
``InMemoryDataStore`` and lets deployments plug in their own backend.

Errors raised by a store are wrapped in ``DataStoreError`` so the
orchestrator can tell a store failure from a bug.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from safeping.models import (
    Assignment,
    CheckIn,
    Schedule,
    ScheduledAssignment,
    ScheduleWithAssignments,
    Worker,
)


class DataStoreError(Exception):
    """Raised when the backing store cannot serve a read or accept a write."""
    pass


class DataStore(Protocol):
    """Query/write surface the engine depends on."""

    def list_active_schedules(self) -> list[ScheduleWithAssignments]:
        """Active schedules joined with their active assignments and workers.

        Schedules with no active assignment are omitted.
        """
        ...

    def latest_check_in(self, worker_id: str, org_id: str) -> Optional[CheckIn]:
        """The worker's most recent check-in in ``org_id``, or None."""
        ...

    def insert_check_in(self, check_in: CheckIn) -> CheckIn:
        """Append a check-in row and return it."""
        ...


class InMemoryDataStore:
    """A thread-safe, in-process ``DataStore``.

    Used by the test suite and the synthetic demo.  Check-ins can only be
    appended; there is no update or delete.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._schedules: dict[str, Schedule] = {}
        self._workers: dict[str, Worker] = {}
        self._assignments: list[Assignment] = []
        self._check_ins: list[CheckIn] = []

    # -- administrative setup --

    def add_schedule(self, schedule: Schedule) -> Schedule:
        with self._lock:
            self._schedules[schedule.schedule_id] = schedule
        return schedule

    def add_worker(self, worker: Worker) -> Worker:
        with self._lock:
            self._workers[worker.worker_id] = worker
        return worker

    def add_assignment(self, assignment: Assignment) -> Assignment:
        with self._lock:
            if assignment.schedule_id not in self._schedules:
                raise KeyError(f"Unknown schedule_id '{assignment.schedule_id}'")
            if assignment.worker_id not in self._workers:
                raise KeyError(f"Unknown worker_id '{assignment.worker_id}'")
            self._assignments.append(assignment)
        return assignment

    # -- DataStore --

    def list_active_schedules(self) -> list[ScheduleWithAssignments]:
        with self._lock:
            result = []
            for schedule in self._schedules.values():
                if not schedule.is_active:
                    continue
                joined = [
                    ScheduledAssignment(
                        assignment=a.model_copy(),
                        worker=self._workers[a.worker_id].model_copy(),
                    )
                    for a in self._assignments
                    if a.schedule_id == schedule.schedule_id and a.is_active
                ]
                if joined:
                    result.append(ScheduleWithAssignments(
                        schedule=schedule.model_copy(deep=True),
                        assignments=joined,
                    ))
            return result

    def latest_check_in(self, worker_id: str, org_id: str) -> Optional[CheckIn]:
        with self._lock:
            latest: Optional[CheckIn] = None
            for check_in in self._check_ins:
                if check_in.worker_id != worker_id or check_in.org_id != org_id:
                    continue
                # Ties go to the row inserted last.
                if latest is None or check_in.timestamp >= latest.timestamp:
                    latest = check_in
            return latest.model_copy(deep=True) if latest is not None else None

    def insert_check_in(self, check_in: CheckIn) -> CheckIn:
        with self._lock:
            self._check_ins.append(check_in.model_copy(deep=True))
        return check_in

    # -- inspection --

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        with self._lock:
            worker = self._workers.get(worker_id)
        return worker.model_copy() if worker is not None else None

    def check_ins_for(self, worker_id: str) -> list[CheckIn]:
        """All check-ins for a worker, oldest first."""
        with self._lock:
            rows = [c.model_copy(deep=True) for c in self._check_ins if c.worker_id == worker_id]
        return sorted(rows, key=lambda c: c.timestamp)

    def __len__(self) -> int:
        return len(self._check_ins)
