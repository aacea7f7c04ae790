"""
Append-Only Run Audit Log (Hash-Chained).

Each engine run records what it did: that it started, which schedules and
workers it skipped, which overdue check-ins it wrote, which escalations it
dispatched or failed to dispatch, and how it ended.  Entries carry enough
context (worker, schedule, organization) to replay a failed unit by hand.

Entries are linked by a SHA-256 hash chain, so an entry modified after the
fact breaks ``verify_chain()``.  Queries are scoped by ``org_id``; run-level
entries use the ``SYSTEM_ORG`` scope.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

SYSTEM_ORG = "*"


class AuditEventType(str, enum.Enum):
    # Run lifecycle
    RUN_STARTED = "RUN_STARTED"
    RUN_COMPLETED = "RUN_COMPLETED"
    RUN_FAILED = "RUN_FAILED"
    RUN_CANCELLED = "RUN_CANCELLED"

    # Evaluation
    SCHEDULE_SKIPPED = "SCHEDULE_SKIPPED"
    WORKER_SKIPPED = "WORKER_SKIPPED"

    # Episodes and escalation
    OVERDUE_RECORDED = "OVERDUE_RECORDED"
    OVERDUE_RECORD_FAILED = "OVERDUE_RECORD_FAILED"
    ESCALATION_DISPATCHED = "ESCALATION_DISPATCHED"
    ESCALATION_FAILED = "ESCALATION_FAILED"
    INCIDENT_OPENED = "INCIDENT_OPENED"


class AuditEntry(BaseModel):
    """One audit row: who did what, for which organization, and when."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str = Field(default="", description="Engine run that produced this entry.")
    org_id: str = Field(..., description="Organization scope, or SYSTEM_ORG for run-level events.")
    event_type: AuditEventType = Field(...)
    target_entity: str = Field(
        default="",
        description="Worker, schedule or incident identifier the event concerns.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "run_id": self.run_id,
            "org_id": self.org_id,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``append`` is safe to call from the
    dispatcher's worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current chain head and store it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        org_id: str = SYSTEM_ORG,
        target_entity: str = "",
        run_id: str = "",
        **metadata: Any,
    ) -> AuditEntry:
        """Shorthand for ``append(AuditEntry(...))``."""
        return self.append(AuditEntry(
            run_id=run_id,
            org_id=org_id,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata,
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and check every link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken entry, or None when the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            expected_prev = "" if i == 0 else entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        org_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        run_id: Optional[str] = None,
        target_entity: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return copies of matching entries, oldest first.

        ``org_id=None`` matches every organization; any other value isolates
        that organization's entries.
        """
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if org_id is not None and entry.org_id != org_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if run_id is not None and entry.run_id != run_id:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def __len__(self) -> int:
        return len(self._entries)
