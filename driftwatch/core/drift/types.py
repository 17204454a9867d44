"""
Drift Detection Types
--------------------
This module defines the type system used for drift detection: resource
identity, normalized state, field-level diffs, drift records, lifecycle
statuses, remediation states and lifecycle events.
"""

import hashlib
import json
from enum import Enum
from typing import Dict, Any, Optional, List, FrozenSet, Tuple
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from uuid import UUID, uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def stable_hash(data: Any) -> str:
    """
    Calculate a stable hash for JSON-like data.

    Args:
        data: Any JSON-serializable structure

    Returns:
        Hex digest of the key-sorted JSON form
    """
    serialized = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()


class ResourceIdentity(BaseModel):
    """Immutable identity of a managed resource."""

    model_config = ConfigDict(frozen=True)

    environment: str
    namespace: str = ""
    kind: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.environment}/{self.namespace}/{self.kind}/{self.name}"

    @property
    def path(self) -> str:
        """Path of the declared manifest in the configuration source."""
        return self.key

    @property
    def service_key(self) -> str:
        """Logical resource name shared across environments."""
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_key(cls, key: str) -> "ResourceIdentity":
        parts = key.split("/")
        if len(parts) != 4:
            raise ValueError(f"Malformed resource key: {key!r}")
        environment, namespace, kind, name = parts
        return cls(environment=environment, namespace=namespace, kind=kind, name=name)

    def __str__(self) -> str:
        return self.key


class Severity(str, Enum):
    """Ordered severity classes for a drift record."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        return cls(str(value).strip().lower())


SEVERITY_ORDER: List[Severity] = [
    Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL
]


class DiffType(str, Enum):
    """Kind of leaf-level difference, from the live side's point of view."""

    ADDED = "added"        # present live, absent from desired
    REMOVED = "removed"    # present in desired, absent live
    CHANGED = "changed"


class DriftClass(str, Enum):
    """Shape of the divergence between desired and live state."""

    MODIFIED = "modified"
    MISSING = "missing"        # declared, not running
    UNMANAGED = "unmanaged"    # running, not declared


class DriftStatus(str, Enum):
    """Lifecycle status of a drift record."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    REMEDIATING = "remediating"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({DriftStatus.RESOLVED, DriftStatus.EXPIRED})
ACTIVE_STATUSES = frozenset(set(DriftStatus) - TERMINAL_STATUSES)

STATUS_TRANSITIONS: Dict[DriftStatus, FrozenSet[DriftStatus]] = {
    DriftStatus.OPEN: frozenset({
        DriftStatus.ACKNOWLEDGED, DriftStatus.REMEDIATING, DriftStatus.RESOLVED,
        DriftStatus.SUPPRESSED, DriftStatus.EXPIRED,
    }),
    DriftStatus.ACKNOWLEDGED: frozenset({
        DriftStatus.REMEDIATING, DriftStatus.RESOLVED, DriftStatus.SUPPRESSED,
        DriftStatus.EXPIRED,
    }),
    # A failed remediation leaves the drift open
    DriftStatus.REMEDIATING: frozenset({
        DriftStatus.RESOLVED, DriftStatus.OPEN, DriftStatus.EXPIRED,
    }),
    DriftStatus.SUPPRESSED: frozenset({
        DriftStatus.OPEN, DriftStatus.RESOLVED, DriftStatus.EXPIRED,
    }),
    DriftStatus.RESOLVED: frozenset(),
    DriftStatus.EXPIRED: frozenset(),
}


def can_transition(current: DriftStatus, target: DriftStatus) -> bool:
    return target in STATUS_TRANSITIONS[current]


class RemediationState(str, Enum):
    """States of the remediation decision state machine."""

    OPEN = "open"
    EVALUATING = "evaluating"
    AUTO_APPLY = "auto-apply"
    AWAITING_APPROVAL = "awaiting-approval"
    NO_ACTION = "no-action"
    REMEDIATING = "remediating"
    RESOLVED = "resolved"
    FAILED = "failed"


REMEDIATION_TRANSITIONS: Dict[RemediationState, FrozenSet[RemediationState]] = {
    RemediationState.OPEN: frozenset({RemediationState.EVALUATING}),
    RemediationState.EVALUATING: frozenset({
        RemediationState.AUTO_APPLY,
        RemediationState.AWAITING_APPROVAL,
        RemediationState.NO_ACTION,
    }),
    # A lock timeout can fail an auto-apply before it starts
    RemediationState.AUTO_APPLY: frozenset({
        RemediationState.REMEDIATING, RemediationState.FAILED,
    }),
    # Re-evaluation after a material diff change goes back through OPEN
    RemediationState.AWAITING_APPROVAL: frozenset({
        RemediationState.REMEDIATING, RemediationState.OPEN,
    }),
    RemediationState.NO_ACTION: frozenset({RemediationState.OPEN}),
    RemediationState.REMEDIATING: frozenset({
        RemediationState.RESOLVED, RemediationState.FAILED,
    }),
    # No silent retries: a failure needs a fresh approval
    RemediationState.FAILED: frozenset({
        RemediationState.AWAITING_APPROVAL, RemediationState.OPEN,
    }),
    RemediationState.RESOLVED: frozenset(),
}


class RemediationAction(str, Enum):
    AUTO_APPLY = "auto-apply"
    REQUEST_APPROVAL = "request-approval"
    NO_ACTION = "no-action"


class RemediationOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class EventType(str, Enum):
    """Drift lifecycle events published on the event bus."""

    DETECTED = "detected"
    UPDATED = "updated"
    CLASSIFIED = "classified"
    REMEDIATION_STARTED = "remediation_started"
    RESOLVED = "resolved"
    FAILED = "failed"
    EXPIRED = "expired"
    ACKNOWLEDGED = "acknowledged"
    SUPPRESSED = "suppressed"
    APPROVAL_REQUESTED = "approval_requested"


class NormalizedState(BaseModel):
    """
    Canonical, comparable form of a resource's state.

    ``leaves`` maps dot/bracket paths to typed scalar values (or empty
    containers). ``ignored`` holds the masked paths that were present in the
    raw input. Derived on every comparison pass, never persisted.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    leaves: Dict[str, Any] = Field(default_factory=dict)
    ignored: Dict[str, Any] = Field(default_factory=dict)
    revision: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return stable_hash(self.leaves)

    @property
    def paths(self) -> FrozenSet[str]:
        return frozenset(self.leaves)


class FieldDiff(BaseModel):
    """A single leaf-level difference between desired and live state."""

    path: str
    diff_type: DiffType
    desired_value: Optional[Any] = None
    live_value: Optional[Any] = None
    weight: float = 1.0

    def describe(self) -> str:
        return f"{self.path}: {self.desired_value!r}→{self.live_value!r}"


class DriftRecord(BaseModel):
    """
    A detected divergence for one managed resource.

    Created by the comparator, merged by the correlator, classified by the
    classifier (severity metadata only) and moved through its lifecycle by
    the remediation engine. ``version`` guards conditional updates.
    """

    id: UUID = Field(default_factory=uuid4)
    identity: ResourceIdentity
    drift_class: DriftClass
    diffs: List[FieldDiff] = Field(default_factory=list)
    score: float = 0.0
    status: DriftStatus = DriftStatus.OPEN

    severity: Optional[Severity] = None
    eligible: bool = False
    confidence: Optional[float] = None
    degraded: bool = False
    classified_fingerprint: Optional[str] = None

    remediation_state: RemediationState = RemediationState.OPEN

    desired_revision: Optional[str] = None
    desired_fingerprint: Optional[str] = None
    live_fingerprint: Optional[str] = None

    detected_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    last_notified_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    occurrence_count: int = 1
    version: int = 0

    @property
    def changed_paths(self) -> FrozenSet[str]:
        return frozenset(d.path for d in self.diffs)

    @property
    def diff_fingerprint(self) -> str:
        """Hash of the diff set including values; identical inputs, identical hash."""
        return stable_hash([
            self.drift_class.value,
            sorted(
                (d.path, d.diff_type.value, d.desired_value, d.live_value)
                for d in self.diffs
            ),
        ])

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def needs_classification(self) -> bool:
        return self.classified_fingerprint != self.diff_fingerprint

    def diff_summary(self) -> Dict[str, Any]:
        """Compact description of the diff set for external scorers."""
        return {
            "drift_class": self.drift_class.value,
            "score": self.score,
            "diff_count": len(self.diffs),
            "diffs": [
                {
                    "path": d.path,
                    "type": d.diff_type.value,
                    "desired": d.desired_value,
                    "live": d.live_value,
                }
                for d in self.diffs
            ],
        }


class RemediationDecision(BaseModel):
    """One decision per entry into the remediation state machine's action phase."""

    id: UUID = Field(default_factory=uuid4)
    drift_id: UUID
    action: RemediationAction
    rationale: str = ""
    decided_at: datetime = Field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    outcome: Optional[RemediationOutcome] = None
    attempts: int = 0
    approved_by: Optional[str] = None


class DriftEvent(BaseModel):
    """A drift lifecycle event as stored in the append-only event log."""

    offset: Optional[int] = None
    drift_id: UUID
    resource_key: str
    event_type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_record(cls, record: DriftRecord, event_type: EventType, **extra: Any) -> "DriftEvent":
        payload = {
            "status": record.status.value,
            "drift_class": record.drift_class.value,
            "score": record.score,
            "severity": record.severity.value if record.severity else None,
            "remediation_state": record.remediation_state.value,
            "occurrence_count": record.occurrence_count,
        }
        payload.update(extra)
        return cls(
            drift_id=record.id,
            resource_key=record.identity.key,
            event_type=event_type,
            payload=payload,
        )

    @property
    def idempotency_key(self) -> Tuple[str, str, str]:
        return (str(self.drift_id), self.event_type.value, self.timestamp.isoformat())


class AuditEntry(BaseModel):
    """Immutable record of one lifecycle or remediation transition."""

    id: UUID = Field(default_factory=uuid4)
    drift_id: UUID
    decision_id: Optional[UUID] = None
    resource_key: str
    from_state: Optional[str] = None
    to_state: str
    actor: str = "engine"
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
