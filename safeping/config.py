"""
Engine settings and per-organization escalation policy.

``EngineSettings`` controls how a run executes: how many escalations may be
in flight at once, how long each may take, and an optional overall run
deadline.

``OrganizationPolicy`` holds an organization's escalation ladder.  Each
``EscalationRule`` fires once a worker has been overdue for at least its
``delay_minutes``; a rule with no ``schedule_id`` applies to every schedule
in the organization.  ``PolicyRegistry`` keeps organizations isolated from
one another: a policy is only ever looked up by its own ``org_id``.

Both are plain pydantic models and can be loaded from YAML.
"""

from __future__ import annotations

import copy
import uuid
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Runtime knobs for a single engine run."""

    dispatch_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum escalation calls in flight at once.",
    )
    dispatch_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-call timeout handed to the escalation notifier.",
    )
    run_deadline_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description=(
            "Wall-clock budget for a run.  Once exceeded, no new schedule "
            "evaluation or dispatch begins."
        ),
    )
    log_level: str = Field(default="INFO")
    escalation_webhook_url: Optional[str] = Field(
        default=None,
        description="Endpoint for WebhookEscalationNotifier; unset means in-process escalation.",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return v.upper()


# ---------------------------------------------------------------------------
# Escalation policy
# ---------------------------------------------------------------------------

CONTACT_METHODS = {"sms", "email", "push", "call"}


class EscalationRule(BaseModel):
    """One rung of an organization's escalation ladder."""

    rule_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: Optional[str] = Field(
        default=None,
        description="Schedule this rule is limited to; None applies it organization-wide.",
    )
    level: int = Field(default=1, ge=1, description="Ladder position; lower fires first.")
    delay_minutes: int = Field(
        default=0,
        ge=0,
        description="Minutes overdue at or after which this rule fires.",
    )
    contact_method: str = Field(default="sms")
    contact_list: list[str] = Field(default_factory=list)
    message_template: Optional[str] = Field(
        default=None,
        description="Supports {{worker_name}}, {{overdue_time}} and {{type}} placeholders.",
    )
    is_active: bool = Field(default=True)

    @field_validator("contact_method")
    @classmethod
    def validate_contact_method(cls, v: str) -> str:
        if v not in CONTACT_METHODS:
            raise ValueError(f"contact_method must be one of {sorted(CONTACT_METHODS)}, got '{v}'")
        return v

    def applies_to(self, schedule_id: str) -> bool:
        return self.is_active and (self.schedule_id is None or self.schedule_id == schedule_id)


class IncidentSeverityThresholds(BaseModel):
    """Minutes overdue above which an incident is rated medium or high."""

    medium_above_minutes: int = Field(default=30, ge=0)
    high_above_minutes: int = Field(default=60, ge=0)

    @field_validator("high_above_minutes")
    @classmethod
    def high_above_medium(cls, v: int, info) -> int:
        medium = info.data.get("medium_above_minutes")
        if medium is not None and v < medium:
            raise ValueError(
                f"high_above_minutes ({v}) must be >= medium_above_minutes ({medium})"
            )
        return v

    def severity_for(self, overdue_by_minutes: int) -> str:
        if overdue_by_minutes > self.high_above_minutes:
            return "high"
        if overdue_by_minutes > self.medium_above_minutes:
            return "medium"
        return "low"


class OrganizationPolicy(BaseModel):
    """Escalation policy for a single organization."""

    org_id: str = Field(..., min_length=1)
    org_name: str = Field(default="")
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    incident_severity: IncidentSeverityThresholds = Field(
        default_factory=IncidentSeverityThresholds,
    )

    def rules_for(self, schedule_id: str) -> list[EscalationRule]:
        """Active rules for ``schedule_id``, ordered by level."""
        return sorted(
            (r for r in self.escalation_rules if r.applies_to(schedule_id)),
            key=lambda r: r.level,
        )


class PolicyRegistry:
    """In-memory registry of organization policies, keyed by ``org_id``."""

    def __init__(self) -> None:
        self._policies: dict[str, OrganizationPolicy] = {}

    def register(self, policy: OrganizationPolicy) -> None:
        """Register a new policy.

        Raises:
            ValueError: If ``org_id`` is already registered.
        """
        if policy.org_id in self._policies:
            raise ValueError(
                f"Policy for org_id '{policy.org_id}' already registered. "
                "Use update() to modify an existing policy."
            )
        self._policies[policy.org_id] = copy.deepcopy(policy)

    def get(self, org_id: str) -> OrganizationPolicy:
        """Return a copy of the policy for ``org_id``.

        Raises:
            KeyError: If no policy is registered for ``org_id``.
        """
        if org_id not in self._policies:
            raise KeyError(f"No policy registered for org_id '{org_id}'")
        return copy.deepcopy(self._policies[org_id])

    def update(self, policy: OrganizationPolicy) -> None:
        if policy.org_id not in self._policies:
            raise KeyError(
                f"Cannot update: no policy registered for org_id '{policy.org_id}'"
            )
        self._policies[policy.org_id] = copy.deepcopy(policy)

    def list_orgs(self) -> list[str]:
        return sorted(self._policies.keys())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, org_id: str) -> bool:
        return org_id in self._policies


# ---------------------------------------------------------------------------
# YAML loaders
# ---------------------------------------------------------------------------

def _read_yaml_mapping(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a YAML mapping at the top level.")
    return raw


def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load ``EngineSettings`` from the ``engine`` key of a YAML file.

    A missing ``engine`` key yields the defaults.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If a setting fails validation.
    """
    raw = _read_yaml_mapping(path)
    engine = raw.get("engine") or {}
    if not isinstance(engine, dict):
        raise ValueError("'engine' must be a mapping of settings.")
    return EngineSettings(**engine)


def load_policies_from_yaml(path: str | Path) -> list[OrganizationPolicy]:
    """Load organization policies from the ``policies`` key of a YAML file.

    Example::

        policies:
          - org_id: "acme"
            org_name: "Acme Utilities"
            escalation_rules:
              - level: 1
                delay_minutes: 0
                contact_method: sms
                contact_list: ["+15550100"]

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any policy fails validation.
    """
    raw = _read_yaml_mapping(path)
    if "policies" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'policies' key with a list of policy objects."
        )

    policies_data = raw["policies"]
    if not isinstance(policies_data, list):
        raise ValueError("'policies' must be a list of policy objects.")

    policies: list[OrganizationPolicy] = []
    for idx, entry in enumerate(policies_data):
        if not isinstance(entry, dict):
            raise ValueError(f"Policy entry at index {idx} must be a mapping.")
        policies.append(OrganizationPolicy.model_validate(entry))
    return policies
