"""
Tests for safeping.audit -- Append-Only, Tamper-Evident Run Audit Log.

Covers: append + chain verification, tamper detection, query filtering,
multi-org isolation, and concurrent append ordering.
"""

from __future__ import annotations

import threading

from safeping.audit import SYSTEM_ORG, AuditEntry, AuditEventType, AuditLog


def _make_entry(
    org_id: str = "org_a",
    event_type: AuditEventType = AuditEventType.OVERDUE_RECORDED,
    target_entity: str = "worker_1",
    run_id: str = "run-1",
    metadata: dict | None = None,
) -> AuditEntry:
    return AuditEntry(
        org_id=org_id,
        event_type=event_type,
        target_entity=target_entity,
        run_id=run_id,
        metadata=metadata or {},
    )


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_first_entry_has_empty_previous_hash(self):
        log = AuditLog()
        appended = log.append(_make_entry())
        assert appended.previous_hash == ""
        assert len(log) == 1

    def test_entries_are_linked(self):
        log = AuditLog()
        e1 = log.append(_make_entry(target_entity="worker_1"))
        e2 = log.append(_make_entry(target_entity="worker_2"))
        assert e2.previous_hash == e1.compute_hash()

    def test_empty_log_is_valid(self):
        assert AuditLog().verify_chain() == (True, None)

    def test_intact_chain_verifies(self):
        log = AuditLog()
        for i in range(5):
            log.append(_make_entry(target_entity=f"worker_{i}"))
        assert log.verify_chain() == (True, None)

    def test_record_shorthand_defaults_to_system_scope(self):
        log = AuditLog()
        entry = log.record(AuditEventType.RUN_STARTED, run_id="run-1", schedules=3)
        assert entry.org_id == SYSTEM_ORG
        assert entry.metadata == {"schedules": 3}


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_metadata_breaks_chain(self):
        log = AuditLog()
        for i in range(3):
            log.append(_make_entry(target_entity=f"worker_{i}", metadata={"i": i}))

        log._entries[1].metadata = {"tampered": True}

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 1

    def test_modified_first_entry_detected(self):
        log = AuditLog()
        log.append(_make_entry())
        log.append(_make_entry())

        log._entries[0].target_entity = "TAMPERED"

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 0


# ---------------------------------------------------------------------------
# 3. Query filtering and isolation
# ---------------------------------------------------------------------------

class TestQuery:
    def _populated(self) -> AuditLog:
        log = AuditLog()
        log.record(AuditEventType.RUN_STARTED, run_id="run-1")
        log.append(_make_entry(org_id="org_a", event_type=AuditEventType.OVERDUE_RECORDED))
        log.append(_make_entry(org_id="org_a", event_type=AuditEventType.ESCALATION_DISPATCHED))
        log.append(_make_entry(
            org_id="org_b", event_type=AuditEventType.ESCALATION_FAILED,
            target_entity="worker_9", run_id="run-2",
        ))
        return log

    def test_filter_by_event_type(self):
        entries = self._populated().query(event_type=AuditEventType.ESCALATION_DISPATCHED)
        assert len(entries) == 1
        assert entries[0].org_id == "org_a"

    def test_filter_by_run(self):
        assert len(self._populated().query(run_id="run-2")) == 1

    def test_filter_by_target(self):
        entries = self._populated().query(target_entity="worker_9")
        assert [e.org_id for e in entries] == ["org_b"]

    def test_no_org_filter_returns_everything(self):
        assert len(self._populated().query()) == 4

    def test_org_a_entries_not_visible_to_org_b(self):
        log = self._populated()
        assert all(e.org_id == "org_b" for e in log.query(org_id="org_b"))
        assert len(log.query(org_id="org_a")) == 2

    def test_system_scope(self):
        entries = self._populated().query(org_id=SYSTEM_ORG)
        assert [e.event_type for e in entries] == [AuditEventType.RUN_STARTED]

    def test_query_returns_copies(self):
        log = self._populated()
        log.query(org_id="org_a")[0].metadata["x"] = 1
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 4. Concurrent appends
# ---------------------------------------------------------------------------

class TestConcurrentAppend:
    def test_chain_survives_concurrent_appends(self):
        log = AuditLog()

        def _writer(n: int) -> None:
            for i in range(50):
                log.record(
                    AuditEventType.ESCALATION_DISPATCHED,
                    org_id="org_a",
                    target_entity=f"worker_{n}_{i}",
                )

        threads = [threading.Thread(target=_writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 200
        assert log.verify_chain() == (True, None)
