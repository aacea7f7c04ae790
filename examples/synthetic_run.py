"""
Synthetic Run: Overdue Check-in Engine Walkthrough
=================================================

This script runs the SafePing engine end to end against an in-memory store
filled with entirely synthetic workers.  No real people or contact details
are used, and no message leaves the process.

The scenario is a utilities company with a lone-worker patrol schedule
(check in every 15 minutes, 5 minutes grace) on a Monday morning.

Steps demonstrated:
  1. Load engine settings and escalation policy from YAML
  2. Register schedules, workers and assignments
  3. Run the engine once and print the summary
  4. Run it again to show that nothing is escalated twice
  5. Recover one worker with a manual check-in and run again
  6. Verify the audit log

Usage:
    python -m examples.synthetic_run
    # or: python examples/synthetic_run.py
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from safeping.app_logger import setup_logging
from safeping.audit import AuditLog
from safeping.clock import FixedClock
from safeping.config import PolicyRegistry, load_policies_from_yaml, load_settings_from_yaml
from safeping.escalation_service import RuleBasedEscalationService, build_notifier
from safeping.models import Assignment, CheckIn, Frequency, Schedule, Worker
from safeping.orchestrator import RunOrchestrator
from safeping.store import InMemoryDataStore

ORG_ID = "northfield_utilities"
START = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _print_summary(summary) -> None:
    print(json.dumps(summary.to_response(), indent=2))


def _populate(store: InMemoryDataStore) -> None:
    patrol = store.add_schedule(Schedule(
        schedule_id="patrol",
        org_id=ORG_ID,
        name="Substation patrol",
        check_in_interval_minutes=15,
        grace_period_minutes=5,
        frequency=Frequency.DAILY,
        start_time="06:00",
        end_time="18:00",
    ))
    store.add_schedule(Schedule(
        schedule_id="weekend_cover",
        org_id=ORG_ID,
        name="Weekend cover",
        check_in_interval_minutes=60,
        frequency=Frequency.WEEKLY,
        days_of_week=[6, 7],
    ))

    # (worker, minutes since last check-in; None = never checked in)
    crew = [
        (Worker(worker_id="w-ana", org_id=ORG_ID, first_name="Ana", last_name="Synthetic"), 8),
        (Worker(worker_id="w-ben", org_id=ORG_ID, first_name="Ben", last_name="Synthetic"), 18),
        (Worker(worker_id="w-cai", org_id=ORG_ID, first_name="Cai", last_name="Synthetic"), 25),
        (Worker(worker_id="w-dev", org_id=ORG_ID, first_name="Dev", last_name="Synthetic"), None),
    ]
    for worker, minutes_ago in crew:
        store.add_worker(worker)
        store.add_assignment(Assignment(
            schedule_id=patrol.schedule_id,
            worker_id=worker.worker_id,
            start_date=START.date() - timedelta(days=30),
        ))
        if minutes_ago is not None:
            store.insert_check_in(CheckIn(
                worker_id=worker.worker_id,
                org_id=ORG_ID,
                timestamp=START - timedelta(minutes=minutes_ago),
            ))
    store.add_assignment(Assignment(
        schedule_id="weekend_cover", worker_id="w-ana", start_date=START.date(),
    ))


def main() -> None:
    _banner("SafePing Synthetic Run: Substation Patrol")
    print("All workers, organizations and contacts in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load configuration
    # ------------------------------------------------------------------
    _banner("Step 1: Load Configuration")

    config_path = Path(__file__).parent / "safeping.yaml"
    settings = load_settings_from_yaml(config_path)
    setup_logging(settings.log_level)
    registry = PolicyRegistry()
    for policy in load_policies_from_yaml(config_path):
        registry.register(policy)
    print(f"Settings: {settings.model_dump()}")
    print(f"Policies registered for: {registry.list_orgs()}")

    # ------------------------------------------------------------------
    # Step 2: Populate the store
    # ------------------------------------------------------------------
    _banner("Step 2: Register Schedules and Crew")

    store = InMemoryDataStore()
    _populate(store)
    print(f"Loaded {len(store.list_active_schedules())} active schedules")

    audit_log = AuditLog()
    clock = FixedClock(START)
    notifier = build_notifier(settings, registry, worker_lookup=store.get_worker, audit_log=audit_log)
    orchestrator = RunOrchestrator(store, notifier, clock=clock, settings=settings, audit_log=audit_log)

    # ------------------------------------------------------------------
    # Step 3: First run
    # ------------------------------------------------------------------
    _banner(f"Step 3: Run at {clock.now().isoformat()}")
    _print_summary(orchestrator.run())

    if isinstance(notifier, RuleBasedEscalationService):
        for incident in notifier.incidents:
            print(f"Incident opened: {incident.title} (severity={incident.severity})")

    # ------------------------------------------------------------------
    # Step 4: Re-run five minutes later
    # ------------------------------------------------------------------
    clock.advance(minutes=5)
    _banner(f"Step 4: Re-run at {clock.now().isoformat()}")
    summary = orchestrator.run()
    print(f"Overdue: {summary.overdue_checkins}, newly recorded: {summary.recorded}, "
          f"escalated: {summary.escalations_dispatched}")

    # ------------------------------------------------------------------
    # Step 5: Recovery
    # ------------------------------------------------------------------
    _banner("Step 5: Cai Checks In, Run 30 Minutes Later")
    store.insert_check_in(CheckIn(worker_id="w-cai", org_id=ORG_ID, timestamp=clock.now()))
    clock.advance(minutes=30)
    summary = orchestrator.run()
    for entry in summary.overdue_details:
        state = "already flagged" if entry.already_flagged else (
            "escalated" if entry.escalation_dispatched else "within grace"
        )
        print(f"  {entry.worker_name}: {entry.overdue_by_minutes} min overdue ({state})")

    # ------------------------------------------------------------------
    # Step 6: Audit log
    # ------------------------------------------------------------------
    _banner("Step 6: Audit Log")
    valid, broken_at = audit_log.verify_chain()
    print(f"Audit entries: {len(audit_log)}")
    print(f"Chain verification: valid={valid}, broken_at={broken_at}")
    for worker_id in ("w-ana", "w-ben", "w-cai", "w-dev"):
        rows = store.check_ins_for(worker_id)
        overdue = sum(1 for r in rows if r.status.value == "overdue")
        print(f"  {worker_id}: {len(rows)} check-ins, {overdue} automatic overdue")

    _banner("Run Complete")


if __name__ == "__main__":
    main()
