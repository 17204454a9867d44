"""
Read-Only Queries
-----------------
Query surface consumed by dashboards and reporting: active drift by
environment and service, drift history per resource, decisions and audit
trail per remediation, the cross-environment correlation view, per-resource
error states and the event log.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel

from driftwatch.core.drift.correlator import CorrelatedDrift, Correlator
from driftwatch.core.drift.severity import calculate_severity_distribution
from driftwatch.core.drift.types import (
    AuditEntry, DriftEvent, DriftRecord, EventType, RemediationDecision, Severity
)
from driftwatch.core.observability import HealthMonitor
from driftwatch.services.event_bus import EventBus
from driftwatch.services.store import DriftStore


class ResourceError(BaseModel):
    """Per-resource error state, e.g. an unsupported kind or malformed manifest."""

    resource_key: str
    environment: str
    kind: str
    name: str
    error: str
    since: Optional[datetime] = None


class DriftDetail(BaseModel):
    record: DriftRecord
    decisions: List[RemediationDecision]


class DriftSummary(BaseModel):
    active: int
    by_status: Dict[str, int]
    by_severity: Dict[str, int]
    spreading: int
    resource_errors: int
    latest_offset: int
    health: Dict[str, Any]


class DriftQueries:
    def __init__(
        self,
        store: DriftStore,
        bus: EventBus,
        correlator: Optional[Correlator] = None,
        health: Optional[HealthMonitor] = None,
    ):
        self.store = store
        self.bus = bus
        self.correlator = correlator or Correlator()
        self.health = health or HealthMonitor()

    async def active_drift(
        self,
        environment: Optional[str] = None,
        service: Optional[str] = None,
        severity: Optional[Severity] = None,
    ) -> List[DriftRecord]:
        return await self.store.list_active(environment=environment, service=service, severity=severity)

    async def drift_detail(self, drift_id: UUID) -> DriftDetail:
        record = await self.store.get_record(drift_id)
        decisions = await self.store.list_decisions(drift_id)
        return DriftDetail(record=record, decisions=decisions)

    async def resource_history(self, resource_key: str, limit: int = 100) -> List[DriftRecord]:
        return await self.store.history(resource_key, limit=limit)

    async def decisions(self, drift_id: UUID) -> List[RemediationDecision]:
        await self.store.get_record(drift_id)
        return await self.store.list_decisions(drift_id)

    async def audit_trail(
        self,
        drift_id: Optional[UUID] = None,
        decision_id: Optional[UUID] = None,
    ) -> List[AuditEntry]:
        """Audit entries for a drift record, or for a single remediation decision."""
        if decision_id is not None:
            await self.store.get_decision(decision_id)
        return await self.store.list_audit(drift_id=drift_id, decision_id=decision_id)

    async def correlations(self, spreading_only: bool = True) -> List[CorrelatedDrift]:
        groups = self.correlator.cross_environment_view(await self.store.list_active())
        return [g for g in groups if g.spreading or not spreading_only]

    async def resource_errors(self, environment: Optional[str] = None) -> List[ResourceError]:
        rows = await self.store.list_error_states(environment)
        return [
            ResourceError(
                resource_key=row.key,
                environment=row.environment,
                kind=row.kind,
                name=row.name,
                error=row.error_state,
                since=row.error_at,
            )
            for row in rows
        ]

    async def events(
        self,
        after: int = 0,
        limit: int = 100,
        drift_id: Optional[UUID] = None,
        event_type: Optional[EventType] = None,
    ) -> List[DriftEvent]:
        return await self.bus.read(after=after, limit=limit, drift_id=drift_id, event_type=event_type)

    async def summary(self) -> DriftSummary:
        active = await self.store.list_active()
        errors = await self.store.list_error_states()
        return DriftSummary(
            active=len(active),
            by_status=await self.store.count_by_status(),
            by_severity=calculate_severity_distribution(active),
            spreading=len(self.correlator.cross_environment_view(active)),
            resource_errors=len(errors),
            latest_offset=await self.bus.latest_offset(),
            health=self.health.snapshot(),
        )
