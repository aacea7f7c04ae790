"""
Escalation Dispatcher -- hand grace-expired episodes to the notifier.

The dispatcher fans requests out on a bounded thread pool so a slow
notification service cannot stall the run, and never lets one failed call
affect another.  There is no retry inside a run.  A request whose dispatch
failed is picked up again on the next run only if its overdue check-in was
not recorded; delivery is therefore at-least-once in the worst case and
usually once.

Notifiers implement ``EscalationNotifier``.  They receive the per-call
timeout and are expected to honor it.  Any exception they raise is captured
in the ``DispatchOutcome``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol

import requests
from pydantic import BaseModel, Field

from safeping.audit import AuditEventType, AuditLog
from safeping.models import EpisodeType

logger = logging.getLogger(__name__)


class EscalationError(Exception):
    """Raised by a notifier that rejected an escalation request."""
    pass


class EscalationRequest(BaseModel):
    """What the notifier is told about one overdue episode."""

    worker_id: str = Field(...)
    schedule_id: str = Field(...)
    org_id: str = Field(...)
    overdue_by_minutes: int = Field(..., ge=0)
    episode_type: EpisodeType = Field(default=EpisodeType.OVERDUE_CHECKIN)

    def to_payload(self) -> dict[str, Any]:
        """Wire representation sent to remote escalation services."""
        return {
            "workerId": self.worker_id,
            "scheduleId": self.schedule_id,
            "organizationId": self.org_id,
            "overdueByMinutes": self.overdue_by_minutes,
            "episodeType": self.episode_type.value,
        }


class EscalationNotifier(Protocol):
    def notify(self, request: EscalationRequest, timeout: float) -> bool:
        """Deliver ``request``; return True on success.

        Raise ``EscalationError`` (or let a transport error escape) on failure.
        """
        ...


class DispatchOutcome:
    """Result of one dispatch attempt."""

    def __init__(
        self,
        request: EscalationRequest,
        success: bool,
        error: Optional[str] = None,
        timed_out: bool = False,
        skipped: bool = False,
        elapsed_seconds: float = 0.0,
    ) -> None:
        self.request = request
        self.success = success
        self.error = error
        self.timed_out = timed_out
        self.skipped = skipped
        self.elapsed_seconds = elapsed_seconds

    def __repr__(self) -> str:
        return (
            f"DispatchOutcome(worker_id={self.request.worker_id}, "
            f"success={self.success}, error={self.error!r}, skipped={self.skipped})"
        )


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------

class WebhookEscalationNotifier:
    """POSTs each request as JSON to a remote escalation endpoint."""

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._session = session or requests.Session()

    def notify(self, request: EscalationRequest, timeout: float) -> bool:
        resp = self._session.post(
            self.url,
            json=request.to_payload(),
            headers=self.headers,
            timeout=timeout,
        )
        if resp.status_code >= 400:
            raise EscalationError(
                f"Escalation endpoint returned HTTP {resp.status_code}: {resp.text[:200]}"
            )
        return True


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class EscalationDispatcher:
    """Bounded, failure-isolated fan-out of escalation requests."""

    def __init__(
        self,
        notifier: EscalationNotifier,
        max_concurrency: int = 4,
        timeout_seconds: float = 10.0,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._notifier = notifier
        self._max_concurrency = max_concurrency
        self._timeout = timeout_seconds
        self._audit_log = audit_log

    def dispatch(self, request: EscalationRequest, run_id: str = "") -> DispatchOutcome:
        """Call the notifier once and capture whatever happens."""
        started = time.monotonic()
        try:
            delivered = self._notifier.notify(request, timeout=self._timeout)
        except (TimeoutError, requests.Timeout) as exc:
            outcome = DispatchOutcome(
                request, success=False, error=f"timed out: {exc}", timed_out=True,
                elapsed_seconds=time.monotonic() - started,
            )
        except Exception as exc:
            outcome = DispatchOutcome(
                request, success=False, error=f"{type(exc).__name__}: {exc}",
                elapsed_seconds=time.monotonic() - started,
            )
        else:
            outcome = DispatchOutcome(
                request,
                success=bool(delivered),
                error=None if delivered else "notifier reported failure",
                elapsed_seconds=time.monotonic() - started,
            )

        if outcome.success:
            logger.info(
                "Escalation dispatched for worker %s on schedule %s (%d min overdue)",
                request.worker_id, request.schedule_id, request.overdue_by_minutes,
            )
            self._audit(AuditEventType.ESCALATION_DISPATCHED, outcome, run_id)
        else:
            logger.error(
                "Escalation failed for worker %s on schedule %s: %s",
                request.worker_id, request.schedule_id, outcome.error,
            )
            self._audit(AuditEventType.ESCALATION_FAILED, outcome, run_id)
        return outcome

    def dispatch_all(
        self,
        batch: list[EscalationRequest],
        should_stop: Optional[Callable[[], bool]] = None,
        on_start: Optional[Callable[[EscalationRequest], None]] = None,
        run_id: str = "",
    ) -> list[DispatchOutcome]:
        """Dispatch every request with at most ``max_concurrency`` in flight.

        Outcomes are returned in request order.  Once ``should_stop()``
        returns True, requests that have not started are skipped; calls
        already in flight finish.  ``on_start`` runs on the worker thread
        right before the notifier is called.
        """
        if not batch:
            return []

        def _run(request: EscalationRequest) -> DispatchOutcome:
            if should_stop is not None and should_stop():
                return DispatchOutcome(request, success=False, error="cancelled", skipped=True)
            if on_start is not None:
                try:
                    on_start(request)
                except Exception:
                    logger.exception(
                        "Pre-dispatch step failed for worker %s; dispatching anyway",
                        request.worker_id,
                    )
            return self.dispatch(request, run_id=run_id)

        workers = min(self._max_concurrency, len(batch))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="escalation") as pool:
            futures = [pool.submit(_run, r) for r in batch]
            return [f.result() for f in futures]

    def _audit(self, event_type: AuditEventType, outcome: DispatchOutcome, run_id: str) -> None:
        if self._audit_log is None:
            return
        request = outcome.request
        self._audit_log.record(
            event_type,
            org_id=request.org_id,
            target_entity=request.worker_id,
            run_id=run_id,
            schedule_id=request.schedule_id,
            overdue_by_minutes=request.overdue_by_minutes,
            episode_type=request.episode_type.value,
            error=outcome.error,
        )
