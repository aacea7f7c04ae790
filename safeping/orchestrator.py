"""
Run Orchestrator -- one complete, idempotent overdue check-in pass.

Each run is an explicit state machine:

    IDLE -> LOADING_SCHEDULES -> EVALUATING -> DISPATCHING -> COMPLETED

with a failure path out of loading:

    LOADING_SCHEDULES -> FAILED

(LOADING_SCHEDULES, EVALUATING and DISPATCHING also move to FAILED when an
unexpected error escapes the run itself; the error is re-raised.)

Loading is the only fatal phase.  If the active schedules cannot be read
the run fails with the cause and writes nothing.  From then on every unit
of work is isolated: a worker whose check-ins cannot be read or evaluated
is skipped, and a failed overdue write or escalation is counted and the run
moves on.

The run keeps no state between invocations beyond the ``overdue`` check-ins
the Episode Recorder writes, which is what makes re-running it safe.

**Cancellation:** once the caller's ``cancel_event`` is set or the
configured run deadline passes, no further schedule is evaluated and no
episode that has not started dispatching is recorded or escalated.  An
episode whose dispatch has started is always finished, so a recorded
``overdue`` check-in is never left without its escalation attempt.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from safeping.audit import SYSTEM_ORG, AuditEventType, AuditLog
from safeping.clock import Clock, SystemClock, ensure_utc
from safeping.config import EngineSettings
from safeping.episode_recorder import EpisodeRecorder
from safeping.escalation import EscalationDispatcher, EscalationNotifier, EscalationRequest
from safeping.models import EpisodeType, Schedule, ScheduleWithAssignments, Worker
from safeping.overdue_detector import OverdueEvaluation, evaluate_overdue
from safeping.schedule_evaluator import is_in_session
from safeping.store import DataStore, DataStoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class RunState(str, enum.Enum):
    IDLE = "IDLE"
    LOADING_SCHEDULES = "LOADING_SCHEDULES"
    EVALUATING = "EVALUATING"
    DISPATCHING = "DISPATCHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_VALID_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.LOADING_SCHEDULES},
    RunState.LOADING_SCHEDULES: {RunState.EVALUATING, RunState.FAILED},
    RunState.EVALUATING: {RunState.DISPATCHING, RunState.FAILED},
    RunState.DISPATCHING: {RunState.COMPLETED, RunState.FAILED},
    RunState.COMPLETED: {RunState.IDLE},
    RunState.FAILED: {RunState.IDLE},
}


class InvalidTransitionError(Exception):
    """Raised when a run state transition is not permitted."""
    pass


class ScheduleLoadError(Exception):
    """Raised when the active schedules cannot be loaded."""
    pass


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------

class OverdueEntry(BaseModel):
    """One overdue (worker, schedule) pair found by a run."""

    worker_id: str
    worker_name: str = ""
    schedule_id: str
    schedule_name: str = ""
    org_id: str
    last_check_in: Optional[datetime] = None
    overdue_by_minutes: int
    grace_expired: bool
    already_flagged: bool = Field(
        default=False,
        description="A previous run already recorded this episode; not escalated again.",
    )
    recorded: bool = False
    escalation_dispatched: bool = False
    escalation_error: Optional[str] = None


class SkippedWorker(BaseModel):
    worker_id: str
    schedule_id: str
    reason: str


class RunSummary(BaseModel):
    """What a run did, in a shape suitable for the trigger response."""

    run_id: str
    success: bool
    state: RunState
    processed_at: datetime
    schedules_processed: int = 0
    schedules_in_session: int = 0
    overdue_checkins: int = 0
    overdue_details: list[OverdueEntry] = Field(default_factory=list)
    recorded: int = 0
    escalations_dispatched: int = 0
    escalation_failures: int = 0
    skipped_workers: list[SkippedWorker] = Field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class RunOrchestrator:
    """Drives the schedule evaluator, overdue detector, episode recorder and
    escalation dispatcher over every active assignment.

    All collaborators are injected; nothing here touches a global client.
    Runs on one orchestrator do not overlap: a second ``run()`` while one is
    in progress raises ``InvalidTransitionError``.
    """

    def __init__(
        self,
        store: DataStore,
        notifier: EscalationNotifier,
        clock: Optional[Clock] = None,
        settings: Optional[EngineSettings] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._audit_log = audit_log
        self._recorder = EpisodeRecorder(store, audit_log)
        self._dispatcher = EscalationDispatcher(
            notifier,
            max_concurrency=self._settings.dispatch_concurrency,
            timeout_seconds=self._settings.dispatch_timeout_seconds,
            audit_log=audit_log,
        )
        self._state = RunState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> RunState:
        return self._state

    # -- helpers --

    def _transition(self, target: RunState) -> None:
        with self._state_lock:
            allowed = _VALID_TRANSITIONS.get(self._state, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition from {self._state.value} to {target.value}. "
                    f"Allowed transitions: {[s.value for s in allowed]}"
                )
            self._state = target

    def _begin(self) -> None:
        with self._state_lock:
            if self._state in (RunState.COMPLETED, RunState.FAILED):
                self._state = RunState.IDLE
        self._transition(RunState.LOADING_SCHEDULES)

    def _audit(self, event_type: AuditEventType, run_id: str, org_id: str = SYSTEM_ORG, target_entity: str = "", **metadata: Any) -> None:
        if self._audit_log is None:
            return
        self._audit_log.record(
            event_type, org_id=org_id, target_entity=target_entity, run_id=run_id, **metadata,
        )

    # -- run --

    def run(self, cancel_event: Optional[threading.Event] = None) -> RunSummary:
        """Execute one full pass and return its summary.

        Args:
            cancel_event: Optional external cancellation signal.

        Returns:
            A ``RunSummary``.  ``success`` is False only when the schedules
            could not be loaded; per-worker and per-dispatch failures are
            reported in the summary of a successful run.
        """
        self._begin()
        run_id = str(uuid.uuid4())
        started = time.monotonic()
        deadline = self._settings.run_deadline_seconds

        def should_stop() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and time.monotonic() - started >= deadline

        try:
            now = ensure_utc(self._clock.now())
            logger.info("Processing overdue check-ins at %s (run %s)", now.isoformat(), run_id)
            self._audit(AuditEventType.RUN_STARTED, run_id, processed_at=now.isoformat())
        except Exception:
            self._transition(RunState.FAILED)
            logger.exception("Run %s could not start", run_id)
            raise

        # -- loading --
        try:
            loaded = self._load_schedules()
        except ScheduleLoadError as exc:
            self._transition(RunState.FAILED)
            logger.error("Run %s failed while loading schedules: %s", run_id, exc)
            self._audit(AuditEventType.RUN_FAILED, run_id, error=str(exc))
            return RunSummary(
                run_id=run_id,
                success=False,
                state=RunState.FAILED,
                processed_at=now,
                error=str(exc),
            )
        logger.info("Found %d active schedules", len(loaded))

        summary = RunSummary(
            run_id=run_id,
            success=True,
            state=RunState.EVALUATING,
            processed_at=now,
            schedules_processed=len(loaded),
        )

        try:
            self._transition(RunState.EVALUATING)
            found = self._evaluate(loaded, now, run_id, should_stop, summary)

            self._transition(RunState.DISPATCHING)
            summary.state = RunState.DISPATCHING
            self._dispatch(found, now, run_id, should_stop, summary)
        except Exception as exc:
            self._transition(RunState.FAILED)
            logger.exception("Run %s aborted by an unexpected error", run_id)
            self._audit(AuditEventType.RUN_FAILED, run_id, error=str(exc))
            raise

        summary.overdue_details = [entry for entry, _ in found]
        summary.overdue_checkins = len(found)
        summary.recorded = sum(1 for entry in summary.overdue_details if entry.recorded)

        self._transition(RunState.COMPLETED)
        summary.state = RunState.COMPLETED
        logger.info(
            "Processing complete. Found %d overdue check-ins (%d recorded, %d escalated, %d escalation failures)",
            summary.overdue_checkins, summary.recorded,
            summary.escalations_dispatched, summary.escalation_failures,
        )
        self._audit(
            AuditEventType.RUN_CANCELLED if summary.cancelled else AuditEventType.RUN_COMPLETED,
            run_id,
            schedules_processed=summary.schedules_processed,
            overdue_checkins=summary.overdue_checkins,
            escalations_dispatched=summary.escalations_dispatched,
            escalation_failures=summary.escalation_failures,
        )
        return summary

    def _evaluate(
        self,
        loaded: list[ScheduleWithAssignments],
        now: datetime,
        run_id: str,
        should_stop: Callable[[], bool],
        summary: RunSummary,
    ) -> list[tuple[OverdueEntry, OverdueEvaluation]]:
        found: list[tuple[OverdueEntry, OverdueEvaluation]] = []
        today = now.date()
        for item in loaded:
            if should_stop():
                summary.cancelled = True
                logger.warning("Run %s cancelled; remaining schedules not evaluated", run_id)
                break
            schedule = item.schedule
            if not is_in_session(schedule, now):
                self._audit(
                    AuditEventType.SCHEDULE_SKIPPED, run_id, org_id=schedule.org_id,
                    target_entity=schedule.schedule_id, reason="not in session",
                )
                continue

            summary.schedules_in_session += 1
            logger.info("Processing schedule: %s", schedule.name or schedule.schedule_id)
            for scheduled in item.assignments:
                if not scheduled.assignment.in_effect_on(today):
                    continue
                result = self._evaluate_worker(schedule, scheduled.worker, now, run_id, summary)
                if result is not None:
                    found.append(result)
        return found

    def _load_schedules(self) -> list[ScheduleWithAssignments]:
        try:
            return self._store.list_active_schedules()
        except Exception as exc:
            raise ScheduleLoadError(f"Failed to fetch schedules: {exc}") from exc

    def _evaluate_worker(
        self,
        schedule: Schedule,
        worker: Worker,
        now: datetime,
        run_id: str,
        summary: RunSummary,
    ) -> Optional[tuple[OverdueEntry, OverdueEvaluation]]:
        try:
            latest = self._store.latest_check_in(worker.worker_id, schedule.org_id)
            evaluation = evaluate_overdue(schedule, latest, now)
        except Exception as exc:
            logger.error(
                "Error evaluating check-ins for worker %s on schedule %s: %s",
                worker.worker_id, schedule.schedule_id, exc,
                exc_info=not isinstance(exc, DataStoreError),
            )
            summary.skipped_workers.append(SkippedWorker(
                worker_id=worker.worker_id, schedule_id=schedule.schedule_id, reason=str(exc),
            ))
            self._audit(
                AuditEventType.WORKER_SKIPPED, run_id, org_id=schedule.org_id,
                target_entity=worker.worker_id, schedule_id=schedule.schedule_id, error=str(exc),
            )
            return None

        if not evaluation.is_overdue:
            return None

        logger.info(
            "Worker %s is %d minutes overdue on schedule %s",
            worker.display_name, evaluation.overdue_by_minutes, schedule.schedule_id,
        )
        entry = OverdueEntry(
            worker_id=worker.worker_id,
            worker_name=worker.display_name,
            schedule_id=schedule.schedule_id,
            schedule_name=schedule.name,
            org_id=schedule.org_id,
            last_check_in=latest.timestamp if latest is not None else None,
            overdue_by_minutes=evaluation.overdue_by_minutes,
            grace_expired=evaluation.grace_expired,
            already_flagged=evaluation.already_flagged,
        )
        return entry, evaluation

    def _dispatch(
        self,
        found: list[tuple[OverdueEntry, OverdueEvaluation]],
        now: datetime,
        run_id: str,
        should_stop: Callable[[], bool],
        summary: RunSummary,
    ) -> None:
        batch: list[EscalationRequest] = []
        units: dict[int, tuple[OverdueEntry, OverdueEvaluation]] = {}
        for entry, evaluation in found:
            if not evaluation.needs_escalation:
                continue
            request = EscalationRequest(
                worker_id=entry.worker_id,
                schedule_id=entry.schedule_id,
                org_id=entry.org_id,
                overdue_by_minutes=entry.overdue_by_minutes,
                episode_type=EpisodeType.OVERDUE_CHECKIN,
            )
            batch.append(request)
            units[id(request)] = (entry, evaluation)

        if not batch:
            return
        logger.info("Triggering escalations for %d overdue check-ins", len(batch))

        def record(request: EscalationRequest) -> None:
            entry, evaluation = units[id(request)]
            entry.recorded = self._recorder.record_if_needed(
                org_id=entry.org_id,
                worker_id=entry.worker_id,
                schedule_id=entry.schedule_id,
                overdue_by_minutes=entry.overdue_by_minutes,
                grace_expired=entry.grace_expired,
                latest_check_in=evaluation.latest_check_in,
                processed_at=now,
                run_id=run_id,
            )

        outcomes = self._dispatcher.dispatch_all(
            batch, should_stop=should_stop, on_start=record, run_id=run_id,
        )
        for outcome in outcomes:
            entry, _ = units[id(outcome.request)]
            if outcome.skipped:
                summary.cancelled = True
                entry.escalation_error = outcome.error
                continue
            entry.escalation_dispatched = outcome.success
            entry.escalation_error = outcome.error
            if outcome.success:
                summary.escalations_dispatched += 1
            else:
                summary.escalation_failures += 1
