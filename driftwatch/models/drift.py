from typing import List, Optional, Dict, Any
from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, DateTime, Index, text
from uuid import UUID, uuid4
from datetime import datetime

from driftwatch.core.drift.types import (
    AuditEntry,
    DriftClass,
    DriftEvent,
    DriftRecord,
    DriftStatus,
    EventType,
    FieldDiff,
    RemediationAction,
    RemediationDecision,
    RemediationOutcome,
    RemediationState,
    ResourceIdentity,
    Severity,
    utcnow,
)

# Terminal statuses excluded from the one-active-record-per-resource index
ACTIVE_RECORD_CLAUSE = "status NOT IN ('resolved', 'expired')"


class ManagedResourceRow(SQLModel, table=True):
    __tablename__ = "managed_resources"

    key: str = Field(primary_key=True)  # environment/namespace/kind/name
    environment: str = Field(index=True)
    namespace: str = ""
    kind: str = Field(index=True)
    name: str = Field(index=True)

    desired_present: bool = False
    live_present: bool = False
    desired_revision: Optional[str] = None
    first_seen_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    last_compared_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    absent_since: Optional[datetime] = Field(default=None, sa_type=DateTime())
    archived: bool = Field(default=False, index=True)

    # Per-resource error state, visible in queries
    error_state: Optional[str] = None
    error_at: Optional[datetime] = Field(default=None, sa_type=DateTime())

    @property
    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(
            environment=self.environment, namespace=self.namespace, kind=self.kind, name=self.name
        )


class DriftRecordRow(SQLModel, table=True):
    __tablename__ = "drift_records"
    __table_args__ = (
        Index(
            "uq_drift_records_active_resource",
            "resource_key",
            unique=True,
            sqlite_where=text(ACTIVE_RECORD_CLAUSE),
            postgresql_where=text(ACTIVE_RECORD_CLAUSE),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    resource_key: str = Field(index=True)
    environment: str = Field(index=True)
    namespace: str = ""
    kind: str
    name: str = Field(index=True)

    drift_class: str
    diffs: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    score: float = 0.0
    status: str = Field(default=DriftStatus.OPEN.value, index=True)

    severity: Optional[str] = Field(default=None, index=True)
    eligible: bool = False
    confidence: Optional[float] = None
    degraded: bool = False
    classified_fingerprint: Optional[str] = None
    remediation_state: str = RemediationState.OPEN.value

    desired_revision: Optional[str] = None
    desired_fingerprint: Optional[str] = None
    live_fingerprint: Optional[str] = None

    detected_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())
    last_seen_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    last_notified_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    occurrence_count: int = 1

    # Compare-and-swap guard
    version: int = 0

    @staticmethod
    def values_from(record: DriftRecord) -> Dict[str, Any]:
        """Column values for a domain record, excluding the version."""
        identity = record.identity
        return {
            "id": record.id,
            "resource_key": identity.key,
            "environment": identity.environment,
            "namespace": identity.namespace,
            "kind": identity.kind,
            "name": identity.name,
            "drift_class": record.drift_class.value,
            "diffs": [d.model_dump(mode="json") for d in record.diffs],
            "score": record.score,
            "status": record.status.value,
            "severity": record.severity.value if record.severity else None,
            "eligible": record.eligible,
            "confidence": record.confidence,
            "degraded": record.degraded,
            "classified_fingerprint": record.classified_fingerprint,
            "remediation_state": record.remediation_state.value,
            "desired_revision": record.desired_revision,
            "desired_fingerprint": record.desired_fingerprint,
            "live_fingerprint": record.live_fingerprint,
            "detected_at": record.detected_at,
            "last_seen_at": record.last_seen_at,
            "last_notified_at": record.last_notified_at,
            "resolved_at": record.resolved_at,
            "occurrence_count": record.occurrence_count,
        }

    @classmethod
    def from_domain(cls, record: DriftRecord) -> "DriftRecordRow":
        return cls(version=record.version, **cls.values_from(record))

    def to_domain(self) -> DriftRecord:
        return DriftRecord(
            id=self.id,
            identity=ResourceIdentity(
                environment=self.environment, namespace=self.namespace, kind=self.kind, name=self.name
            ),
            drift_class=DriftClass(self.drift_class),
            diffs=[FieldDiff(**d) for d in self.diffs or []],
            score=self.score,
            status=DriftStatus(self.status),
            severity=Severity(self.severity) if self.severity else None,
            eligible=self.eligible,
            confidence=self.confidence,
            degraded=self.degraded,
            classified_fingerprint=self.classified_fingerprint,
            remediation_state=RemediationState(self.remediation_state),
            desired_revision=self.desired_revision,
            desired_fingerprint=self.desired_fingerprint,
            live_fingerprint=self.live_fingerprint,
            detected_at=self.detected_at,
            last_seen_at=self.last_seen_at,
            last_notified_at=self.last_notified_at,
            resolved_at=self.resolved_at,
            occurrence_count=self.occurrence_count,
            version=self.version,
        )


class RemediationDecisionRow(SQLModel, table=True):
    __tablename__ = "remediation_decisions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    drift_id: UUID = Field(index=True)
    resource_key: str = Field(index=True)
    action: str
    rationale: str = ""
    decided_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    executed_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    outcome: Optional[str] = None
    attempts: int = 0
    approved_by: Optional[str] = None

    @classmethod
    def from_domain(cls, decision: RemediationDecision, resource_key: str) -> "RemediationDecisionRow":
        return cls(
            id=decision.id,
            drift_id=decision.drift_id,
            resource_key=resource_key,
            action=decision.action.value,
            rationale=decision.rationale,
            decided_at=decision.decided_at,
            executed_at=decision.executed_at,
            outcome=decision.outcome.value if decision.outcome else None,
            attempts=decision.attempts,
            approved_by=decision.approved_by,
        )

    def to_domain(self) -> RemediationDecision:
        return RemediationDecision(
            id=self.id,
            drift_id=self.drift_id,
            action=RemediationAction(self.action),
            rationale=self.rationale,
            decided_at=self.decided_at,
            executed_at=self.executed_at,
            outcome=RemediationOutcome(self.outcome) if self.outcome else None,
            attempts=self.attempts,
            approved_by=self.approved_by,
        )


class AuditEntryRow(SQLModel, table=True):
    """Immutable: rows are inserted, never updated."""

    __tablename__ = "audit_entries"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    drift_id: UUID = Field(index=True)
    decision_id: Optional[UUID] = Field(default=None, index=True)
    resource_key: str = Field(index=True)
    from_state: Optional[str] = None
    to_state: str
    actor: str = "engine"
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryRow":
        return cls(**entry.model_dump())

    def to_domain(self) -> AuditEntry:
        return AuditEntry(
            id=self.id,
            drift_id=self.drift_id,
            decision_id=self.decision_id,
            resource_key=self.resource_key,
            from_state=self.from_state,
            to_state=self.to_state,
            actor=self.actor,
            message=self.message,
            timestamp=self.timestamp,
        )


class DriftEventRow(SQLModel, table=True):
    """Append-only event log; ``seq`` is the event's offset."""

    __tablename__ = "drift_events"
    # Never reuse an offset after compaction
    __table_args__ = {"sqlite_autoincrement": True}

    seq: Optional[int] = Field(default=None, primary_key=True)
    drift_id: UUID = Field(index=True)
    resource_key: str = Field(index=True)
    event_type: str = Field(index=True)
    timestamp: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())
    payload: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)

    @classmethod
    def from_domain(cls, event: DriftEvent) -> "DriftEventRow":
        return cls(
            drift_id=event.drift_id,
            resource_key=event.resource_key,
            event_type=event.event_type.value,
            timestamp=event.timestamp,
            payload=event.payload,
        )

    def to_domain(self) -> DriftEvent:
        return DriftEvent(
            offset=self.seq,
            drift_id=self.drift_id,
            resource_key=self.resource_key,
            event_type=EventType(self.event_type),
            timestamp=self.timestamp,
            payload=self.payload or {},
        )


class ConsumerOffsetRow(SQLModel, table=True):
    __tablename__ = "consumer_offsets"

    consumer: str = Field(primary_key=True)
    position: int = 0  # offset of the last event handled
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())


class ProcessedEventRow(SQLModel, table=True):
    """Idempotency keys already handled by a consumer."""

    __tablename__ = "processed_events"

    consumer: str = Field(primary_key=True)
    idempotency_key: str = Field(primary_key=True)
    processed_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())
