"""
Tests for safeping.escalation -- Escalation Dispatcher.

Covers: successful dispatch, failure isolation, timeouts, bounded
concurrency, cancellation of unstarted requests, the pre-dispatch hook, and
the webhook notifier's wire format.
"""

from __future__ import annotations

import threading
import time

import pytest
import requests

from safeping.audit import AuditEventType, AuditLog
from safeping.escalation import (
    EscalationDispatcher,
    EscalationError,
    EscalationRequest,
    WebhookEscalationNotifier,
)
from safeping.models import EpisodeType


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _make_request(worker_id: str = "w1", minutes: int = 12) -> EscalationRequest:
    return EscalationRequest(
        worker_id=worker_id,
        schedule_id="s1",
        org_id="org_a",
        overdue_by_minutes=minutes,
    )


class _Notifier:
    """Records calls; fails for selected workers."""

    def __init__(self, fail_for=(), raise_for=(), timeout_for=(), delay: float = 0.0) -> None:
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.timeout_for = set(timeout_for)
        self.delay = delay
        self.calls: list[EscalationRequest] = []
        self.timeouts: list[float] = []
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def notify(self, request: EscalationRequest, timeout: float) -> bool:
        with self._lock:
            self.calls.append(request)
            self.timeouts.append(timeout)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if request.worker_id in self.raise_for:
                raise EscalationError("upstream rejected")
            if request.worker_id in self.timeout_for:
                raise TimeoutError("no answer")
            return request.worker_id not in self.fail_for
        finally:
            with self._lock:
                self._active -= 1


class _Response:
    def __init__(self, status_code: int, text: str = "") -> None:
        self.status_code = status_code
        self.text = text


class _Session:
    def __init__(self, status_code: int = 200, exc: Exception | None = None) -> None:
        self.status_code = status_code
        self.exc = exc
        self.posts: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return _Response(self.status_code, "boom")


# ---------------------------------------------------------------------------
# 1. Single dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    def test_success(self):
        audit_log = AuditLog()
        notifier = _Notifier()
        dispatcher = EscalationDispatcher(notifier, timeout_seconds=3.0, audit_log=audit_log)

        outcome = dispatcher.dispatch(_make_request(), run_id="run-1")

        assert outcome.success is True
        assert outcome.error is None
        assert notifier.timeouts == [3.0]
        entries = audit_log.query(org_id="org_a", event_type=AuditEventType.ESCALATION_DISPATCHED)
        assert len(entries) == 1
        assert entries[0].metadata["episode_type"] == "overdue_checkin"

    def test_notifier_reports_failure(self):
        outcome = EscalationDispatcher(_Notifier(fail_for={"w1"})).dispatch(_make_request())
        assert outcome.success is False
        assert outcome.error == "notifier reported failure"

    def test_exception_is_captured(self):
        audit_log = AuditLog()
        dispatcher = EscalationDispatcher(_Notifier(raise_for={"w1"}), audit_log=audit_log)
        outcome = dispatcher.dispatch(_make_request())
        assert outcome.success is False
        assert "EscalationError" in outcome.error
        assert len(audit_log.query(event_type=AuditEventType.ESCALATION_FAILED)) == 1

    def test_timeout_is_flagged(self):
        outcome = EscalationDispatcher(_Notifier(timeout_for={"w1"})).dispatch(_make_request())
        assert outcome.success is False
        assert outcome.timed_out is True

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            EscalationDispatcher(_Notifier(), max_concurrency=0)


# ---------------------------------------------------------------------------
# 2. Fan-out
# ---------------------------------------------------------------------------

class TestDispatchAll:
    def test_empty_batch(self):
        assert EscalationDispatcher(_Notifier()).dispatch_all([]) == []

    def test_one_failure_does_not_stop_others(self):
        notifier = _Notifier(raise_for={"w2"})
        batch = [_make_request("w1"), _make_request("w2"), _make_request("w3")]

        outcomes = EscalationDispatcher(notifier, max_concurrency=2).dispatch_all(batch)

        assert [o.request.worker_id for o in outcomes] == ["w1", "w2", "w3"]
        assert [o.success for o in outcomes] == [True, False, True]
        assert len(notifier.calls) == 3

    def test_concurrency_is_bounded(self):
        notifier = _Notifier(delay=0.05)
        batch = [_make_request(f"w{i}") for i in range(8)]

        outcomes = EscalationDispatcher(notifier, max_concurrency=2).dispatch_all(batch)

        assert all(o.success for o in outcomes)
        assert notifier.max_active <= 2

    def test_should_stop_skips_unstarted_requests(self):
        notifier = _Notifier()
        batch = [_make_request("w1"), _make_request("w2")]

        outcomes = EscalationDispatcher(notifier).dispatch_all(batch, should_stop=lambda: True)

        assert all(o.skipped for o in outcomes)
        assert notifier.calls == []

    def test_on_start_runs_before_notifier(self):
        order: list[str] = []
        lock = threading.Lock()

        class _OrderedNotifier:
            def notify(self, request, timeout):
                with lock:
                    order.append(f"notify:{request.worker_id}")
                return True

        def on_start(request):
            with lock:
                order.append(f"start:{request.worker_id}")

        EscalationDispatcher(_OrderedNotifier(), max_concurrency=1).dispatch_all(
            [_make_request("w1"), _make_request("w2")], on_start=on_start,
        )
        assert order == ["start:w1", "notify:w1", "start:w2", "notify:w2"]

    def test_failing_on_start_still_dispatches(self):
        notifier = _Notifier()

        def on_start(request):
            raise RuntimeError("write failed")

        outcomes = EscalationDispatcher(notifier).dispatch_all([_make_request()], on_start=on_start)
        assert outcomes[0].success is True
        assert len(notifier.calls) == 1


# ---------------------------------------------------------------------------
# 3. Webhook notifier
# ---------------------------------------------------------------------------

class TestWebhookNotifier:
    def test_payload_shape(self):
        request = EscalationRequest(
            worker_id="w1", schedule_id="s1", org_id="org_a",
            overdue_by_minutes=12, episode_type=EpisodeType.MISSED_CHECKIN,
        )
        assert request.to_payload() == {
            "workerId": "w1",
            "scheduleId": "s1",
            "organizationId": "org_a",
            "overdueByMinutes": 12,
            "episodeType": "missed_checkin",
        }

    def test_posts_json_with_timeout(self):
        session = _Session()
        notifier = WebhookEscalationNotifier(
            "https://alerts.example.test/escalate",
            headers={"Authorization": "Bearer token"},
            session=session,
        )

        assert notifier.notify(_make_request(), timeout=2.5) is True

        post = session.posts[0]
        assert post["url"] == "https://alerts.example.test/escalate"
        assert post["json"]["workerId"] == "w1"
        assert post["timeout"] == 2.5
        assert post["headers"]["Authorization"] == "Bearer token"

    def test_http_error_raises(self):
        notifier = WebhookEscalationNotifier("https://x.test", session=_Session(status_code=502))
        with pytest.raises(EscalationError, match="502"):
            notifier.notify(_make_request(), timeout=1.0)

    def test_transport_timeout_becomes_timed_out_outcome(self):
        session = _Session(exc=requests.Timeout("read timed out"))
        dispatcher = EscalationDispatcher(WebhookEscalationNotifier("https://x.test", session=session))
        outcome = dispatcher.dispatch(_make_request())
        assert outcome.timed_out is True
        assert outcome.success is False
