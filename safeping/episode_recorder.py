"""
Episode Recorder -- persist a grace-expired overdue episode exactly once.

Check-ins are append-only and ordered by timestamp, so "the latest check-in
is already ``overdue``" means a previous run has flagged this episode.  That
check is the only idempotence guard: re-running the engine on an unresolved
episode writes nothing.  A manual ``ok`` check-in by the worker makes them
eligible for a new episode.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from safeping.audit import AuditEventType, AuditLog
from safeping.models import CheckIn, CheckInStatus
from safeping.store import DataStore, DataStoreError

logger = logging.getLogger(__name__)


def should_record(grace_expired: bool, latest_check_in: Optional[CheckIn]) -> bool:
    if not grace_expired:
        return False
    return latest_check_in is None or latest_check_in.status != CheckInStatus.OVERDUE


class EpisodeRecorder:
    """Writes automatic ``overdue`` check-ins through a ``DataStore``."""

    def __init__(self, store: DataStore, audit_log: Optional[AuditLog] = None) -> None:
        self._store = store
        self._audit_log = audit_log

    def record_if_needed(
        self,
        org_id: str,
        worker_id: str,
        schedule_id: str,
        overdue_by_minutes: int,
        grace_expired: bool,
        latest_check_in: Optional[CheckIn],
        processed_at: datetime,
        run_id: str = "",
    ) -> bool:
        """Insert one ``overdue`` check-in if the episode is not yet flagged.

        Write failures are logged and reported as ``False``; they never
        propagate, so one worker's failure cannot stop the run.

        Returns:
            True if a row was inserted.
        """
        if not should_record(grace_expired, latest_check_in):
            return False

        check_in = CheckIn(
            worker_id=worker_id,
            org_id=org_id,
            timestamp=processed_at,
            status=CheckInStatus.OVERDUE,
            is_manual=False,
            metadata={
                "schedule_id": schedule_id,
                "overdue_by_minutes": overdue_by_minutes,
                "auto_generated": True,
                "processed_at": processed_at.isoformat(),
            },
        )

        try:
            self._store.insert_check_in(check_in)
        except DataStoreError as exc:
            logger.error(
                "Failed to record overdue check-in for worker %s on schedule %s: %s",
                worker_id, schedule_id, exc,
            )
            self._audit(
                AuditEventType.OVERDUE_RECORD_FAILED, org_id, worker_id, run_id,
                schedule_id=schedule_id, overdue_by_minutes=overdue_by_minutes, error=str(exc),
            )
            return False

        logger.info(
            "Recorded overdue check-in for worker %s on schedule %s (%d min overdue)",
            worker_id, schedule_id, overdue_by_minutes,
        )
        self._audit(
            AuditEventType.OVERDUE_RECORDED, org_id, worker_id, run_id,
            schedule_id=schedule_id, overdue_by_minutes=overdue_by_minutes,
            check_in_id=check_in.check_in_id,
        )
        return True

    def _audit(self, event_type: AuditEventType, org_id: str, worker_id: str, run_id: str, **metadata) -> None:
        if self._audit_log is None:
            return
        self._audit_log.record(
            event_type, org_id=org_id, target_entity=worker_id, run_id=run_id, **metadata,
        )
