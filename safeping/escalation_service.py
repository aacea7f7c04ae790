"""
Rule-Based Escalation Service -- an in-process escalation collaborator.

Implements ``EscalationNotifier`` on top of each organization's escalation
ladder (see ``config.OrganizationPolicy``):

1. Pick the organization's active rules that apply to the schedule, ordered
   by level.
2. Fire every rule whose ``delay_minutes`` the worker has reached.
3. Render the rule's message template, or the default safety alert.
4. Hand the message to each contact through a channel stub.  Message
   transport is outside this package; deployments replace
   ``deliver_to_contact``.
5. Open an incident for ``overdue_checkin`` episodes when at least one rule
   fired, rated by how long the worker has been overdue.

Individual contact failures are recorded on the result and do not fail the
escalation.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, field_validator

from safeping.audit import AuditEventType, AuditLog
from safeping.clock import ensure_utc
from safeping.config import EngineSettings, EscalationRule, PolicyRegistry
from safeping.escalation import (
    EscalationError,
    EscalationNotifier,
    EscalationRequest,
    WebhookEscalationNotifier,
)
from safeping.models import EpisodeType, Worker

logger = logging.getLogger(__name__)

_PHONE = re.compile(r"^\+?[1-9]\d{7,14}$")
_EMAIL = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

DEFAULT_MESSAGE = (
    "SAFETY ALERT: {worker_name} is {overdue_time} overdue for check-in. "
    "Please verify their safety immediately."
)


class Incident(BaseModel):
    """An open incident raised for an escalated overdue episode."""

    incident_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str = Field(...)
    worker_id: str = Field(...)
    title: str = Field(...)
    description: str = Field(default="")
    severity: str = Field(..., description="low, medium or high.")
    status: str = Field(default="open")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def created_at_is_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class ContactResult:
    def __init__(self, contact: str, method: str, success: bool, message: str) -> None:
        self.contact = contact
        self.method = method
        self.success = success
        self.message = message

    def __repr__(self) -> str:
        return f"ContactResult(contact='{self.contact}', method={self.method}, success={self.success})"


class EscalationResult:
    """What one escalation did: rules fired, contacts reached, incident opened."""

    def __init__(
        self,
        request: EscalationRequest,
        triggered_rules: list[EscalationRule],
        contact_results: list[ContactResult],
        incident: Optional[Incident] = None,
    ) -> None:
        self.request = request
        self.triggered_rules = triggered_rules
        self.contact_results = contact_results
        self.incident = incident

    @property
    def escalations_triggered(self) -> int:
        return len(self.triggered_rules)


def render_message(
    rule: EscalationRule,
    worker_name: str,
    overdue_by_minutes: int,
    episode_type: EpisodeType,
) -> str:
    overdue_time = f"{overdue_by_minutes} minutes"
    if not rule.message_template:
        return DEFAULT_MESSAGE.format(worker_name=worker_name, overdue_time=overdue_time)
    return (
        rule.message_template
        .replace("{{worker_name}}", worker_name)
        .replace("{{overdue_time}}", overdue_time)
        .replace("{{type}}", episode_type.value)
    )


def normalize_phone(raw: str) -> str:
    return re.sub(r"[\s\-().]", "", raw)


def deliver_to_contact(method: str, contact: str, message: str) -> ContactResult:
    """Stub: hand ``message`` to one contact.

    Validates the contact address for the channel and reports a simulated
    delivery.  No message leaves the process.
    """
    if method in ("sms", "call"):
        phone = normalize_phone(contact)
        if not _PHONE.match(phone):
            return ContactResult(contact, method, False, f"Invalid phone number format: {contact}")
        return ContactResult(contact, method, True, f"[STUB] {method} to {phone} simulated")
    if method == "email":
        if not _EMAIL.match(contact):
            return ContactResult(contact, method, False, f"Invalid email address format: {contact}")
        return ContactResult(contact, method, True, f"[STUB] email to {contact} simulated")
    return ContactResult(contact, method, True, f"[STUB] {method} notification to {contact} simulated")


class RuleBasedEscalationService:
    """``EscalationNotifier`` driven by organization escalation ladders."""

    def __init__(
        self,
        registry: PolicyRegistry,
        worker_lookup: Optional[Callable[[str], Optional[Worker]]] = None,
        audit_log: Optional[AuditLog] = None,
        deliver: Callable[[str, str, str], ContactResult] = deliver_to_contact,
    ) -> None:
        self._registry = registry
        self._worker_lookup = worker_lookup
        self._audit_log = audit_log
        self._deliver = deliver
        self._lock = threading.Lock()
        self._incidents: list[Incident] = []
        self._results: list[EscalationResult] = []

    def notify(self, request: EscalationRequest, timeout: float) -> bool:
        self.escalate(request)
        return True

    def escalate(self, request: EscalationRequest) -> EscalationResult:
        """Run the organization's ladder for ``request``.

        Raises:
            EscalationError: If the organization has no escalation policy.
        """
        if request.org_id not in self._registry:
            raise EscalationError(
                f"No escalation policy registered for org_id '{request.org_id}'"
            )
        policy = self._registry.get(request.org_id)
        worker_name = self._worker_name(request.worker_id)

        triggered = [
            rule for rule in policy.rules_for(request.schedule_id)
            if request.overdue_by_minutes >= rule.delay_minutes
        ]
        logger.info(
            "Triggering %d escalation level(s) for worker %s (%d min overdue)",
            len(triggered), request.worker_id, request.overdue_by_minutes,
        )

        contact_results: list[ContactResult] = []
        for rule in triggered:
            message = render_message(
                rule, worker_name, request.overdue_by_minutes, request.episode_type,
            )
            for contact in rule.contact_list:
                try:
                    result = self._deliver(rule.contact_method, contact, message)
                except Exception as exc:
                    result = ContactResult(contact, rule.contact_method, False, str(exc))
                if not result.success:
                    logger.warning(
                        "Escalation level %d via %s to %s failed: %s",
                        rule.level, rule.contact_method, contact, result.message,
                    )
                contact_results.append(result)

        incident = None
        if triggered and request.episode_type == EpisodeType.OVERDUE_CHECKIN:
            severity = policy.incident_severity.severity_for(request.overdue_by_minutes)
            incident = self._open_incident(request, worker_name, severity)

        result = EscalationResult(request, triggered, contact_results, incident)
        with self._lock:
            self._results.append(result)
        return result

    @property
    def incidents(self) -> list[Incident]:
        with self._lock:
            return list(self._incidents)

    @property
    def results(self) -> list[EscalationResult]:
        with self._lock:
            return list(self._results)

    def _worker_name(self, worker_id: str) -> str:
        if self._worker_lookup is None:
            return worker_id
        worker = self._worker_lookup(worker_id)
        return worker.display_name if worker is not None else worker_id

    def _open_incident(self, request: EscalationRequest, worker_name: str, severity: str) -> Incident:
        incident = Incident(
            org_id=request.org_id,
            worker_id=request.worker_id,
            title=f"Overdue Check-in: {worker_name}",
            description=(
                f"Worker is {request.overdue_by_minutes} minutes overdue for safety check-in"
            ),
            severity=severity,
            metadata={
                "schedule_id": request.schedule_id,
                "overdue_by_minutes": request.overdue_by_minutes,
                "escalation_triggered": True,
            },
        )
        with self._lock:
            self._incidents.append(incident)
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.INCIDENT_OPENED,
                org_id=request.org_id,
                target_entity=incident.incident_id,
                worker_id=request.worker_id,
                severity=severity,
            )
        return incident


def build_notifier(
    settings: EngineSettings,
    registry: PolicyRegistry,
    worker_lookup: Optional[Callable[[str], Optional[Worker]]] = None,
    audit_log: Optional[AuditLog] = None,
) -> EscalationNotifier:
    """Pick the escalation collaborator for a deployment.

    A configured ``escalation_webhook_url`` sends escalations to a remote
    service; otherwise they run in-process against ``registry``.
    """
    if settings.escalation_webhook_url:
        return WebhookEscalationNotifier(settings.escalation_webhook_url)
    return RuleBasedEscalationService(registry, worker_lookup=worker_lookup, audit_log=audit_log)
