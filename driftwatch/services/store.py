"""
Drift Record Store
------------------
The single point of mutable shared state. Every mutation of a drift record
is a conditional update keyed on its ``version`` column; a writer holding
an older version is rejected with ``StaleWriteError`` instead of silently
overwriting a concurrent update. Lifecycle events, decisions and audit
entries produced by a mutation are written in the same transaction.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import delete, desc, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from driftwatch.core.drift.types import (
    ACTIVE_STATUSES, TERMINAL_STATUSES, AuditEntry, DriftEvent, DriftRecord,
    RemediationDecision, RemediationState, ResourceIdentity, Severity, utcnow
)
from driftwatch.core.errors import RecordNotFound, StaleWriteError
from driftwatch.models.drift import (
    AuditEntryRow, DriftRecordRow, ManagedResourceRow, RemediationDecisionRow
)
from driftwatch.services.event_bus import EventBus, stage_events

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


class RecordChange(BaseModel):
    """A record mutation plus everything written atomically with it."""

    record: DriftRecord
    events: List[DriftEvent] = Field(default_factory=list)
    decisions: List[RemediationDecision] = Field(default_factory=list)
    audit: List[AuditEntry] = Field(default_factory=list)


class DriftStore:
    """Durable drift records, remediation decisions, audit trail and resources."""

    def __init__(self, session_factory: sessionmaker, event_bus: Optional[EventBus] = None):
        self.session_factory = session_factory
        self.event_bus = event_bus

    # ------------------------------------------------------------------
    # Drift records
    # ------------------------------------------------------------------

    async def get_record(self, drift_id: UUID) -> DriftRecord:
        async with self.session_factory() as session:
            row = await session.get(DriftRecordRow, drift_id)
            if row is None:
                raise RecordNotFound(f"Drift record {drift_id} not found")
            return row.to_domain()

    async def get_active(self, resource_key: str) -> Optional[DriftRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DriftRecordRow)
                .where(DriftRecordRow.resource_key == resource_key)
                .where(DriftRecordRow.status.in_([s.value for s in ACTIVE_STATUSES]))
            )
            row = result.scalars().first()
            return row.to_domain() if row else None

    async def create_record(self, change: RecordChange) -> DriftRecord:
        """
        Insert a new drift record at version 1.

        Raises:
            StaleWriteError: Another active record already exists for the resource
        """
        record = change.record.model_copy(update={"version": 1})
        async with self.session_factory() as session:
            session.add(DriftRecordRow.from_domain(record))
            await self._stage_related(session, record, change)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.debug(f"Active record already exists for {record.identity.key}: {e}")
                raise StaleWriteError(str(record.id), expected_version=0) from e

        self._after_commit(change.events)
        return record

    async def update_record(self, change: RecordChange, expected_version: int) -> DriftRecord:
        """
        Conditionally update a record if its stored version still matches.

        Args:
            change: The updated record and its side writes
            expected_version: Version the caller read before mutating

        Returns:
            The stored record at its new version

        Raises:
            StaleWriteError: The stored version moved on
        """
        record = change.record.model_copy(update={"version": expected_version + 1})
        values = DriftRecordRow.values_from(record)
        values.pop("id")
        values["version"] = record.version

        async with self.session_factory() as session:
            result = await session.execute(
                update(DriftRecordRow)
                .where(DriftRecordRow.id == record.id)
                .where(DriftRecordRow.version == expected_version)
                .values(**values)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise StaleWriteError(str(record.id), expected_version=expected_version)
            await self._stage_related(session, record, change)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise StaleWriteError(str(record.id), expected_version=expected_version) from e

        self._after_commit(change.events)
        return record

    async def modify(
        self,
        drift_id: UUID,
        mutate: Callable[[DriftRecord], Optional[RecordChange]],
        max_attempts: int = MAX_CAS_ATTEMPTS,
    ) -> DriftRecord:
        """
        Read-modify-write loop over ``update_record``.

        ``mutate`` receives the freshest record and returns the change to
        write, or None to leave the record alone. It is re-run on every
        stale-write rejection.
        """
        for attempt in range(1, max_attempts + 1):
            current = await self.get_record(drift_id)
            change = mutate(current)
            if change is None:
                return current
            try:
                return await self.update_record(change, current.version)
            except StaleWriteError:
                logger.debug(f"Stale write on {drift_id}, attempt {attempt}/{max_attempts}")
        raise StaleWriteError(str(drift_id))

    async def list_active(
        self,
        environment: Optional[str] = None,
        service: Optional[str] = None,
        severity: Optional[Severity] = None,
    ) -> List[DriftRecord]:
        """
        Active drift, optionally filtered.

        ``service`` matches the logical resource name, either ``name`` or
        ``kind/name``.
        """
        query = select(DriftRecordRow).where(
            DriftRecordRow.status.in_([s.value for s in ACTIVE_STATUSES])
        )
        if environment:
            query = query.where(DriftRecordRow.environment == environment)
        if service:
            if "/" in service:
                kind, name = service.split("/", 1)
                query = query.where(DriftRecordRow.kind == kind).where(DriftRecordRow.name == name)
            else:
                query = query.where(DriftRecordRow.name == service)
        if severity:
            query = query.where(DriftRecordRow.severity == severity.value)

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(desc(DriftRecordRow.score), DriftRecordRow.resource_key))
            return [row.to_domain() for row in result.scalars().all()]

    async def history(self, resource_key: str, limit: int = 100) -> List[DriftRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DriftRecordRow)
                .where(DriftRecordRow.resource_key == resource_key)
                .order_by(desc(DriftRecordRow.detected_at))
                .limit(limit)
            )
            return [row.to_domain() for row in result.scalars().all()]

    async def list_by_remediation_state(self, states: Iterable[RemediationState]) -> List[DriftRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DriftRecordRow)
                .where(DriftRecordRow.remediation_state.in_([s.value for s in states]))
                .where(DriftRecordRow.status.in_([s.value for s in ACTIVE_STATUSES]))
            )
            return [row.to_domain() for row in result.scalars().all()]

    async def count_by_status(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DriftRecordRow.status, func.count()).group_by(DriftRecordRow.status)
            )
            return {status: count for status, count in result.all()}

    async def purge_records(self, cutoff: datetime) -> int:
        """Delete resolved and expired records last seen before ``cutoff``."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DriftRecordRow)
                .where(DriftRecordRow.status.in_([s.value for s in TERMINAL_STATUSES]))
                .where(DriftRecordRow.last_seen_at < cutoff)
            )
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Decisions and audit trail
    # ------------------------------------------------------------------

    async def get_decision(self, decision_id: UUID) -> RemediationDecision:
        async with self.session_factory() as session:
            row = await session.get(RemediationDecisionRow, decision_id)
            if row is None:
                raise RecordNotFound(f"Remediation decision {decision_id} not found")
            return row.to_domain()

    async def list_decisions(self, drift_id: UUID) -> List[RemediationDecision]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RemediationDecisionRow)
                .where(RemediationDecisionRow.drift_id == drift_id)
                .order_by(RemediationDecisionRow.decided_at)
            )
            return [row.to_domain() for row in result.scalars().all()]

    async def list_audit(
        self,
        drift_id: Optional[UUID] = None,
        decision_id: Optional[UUID] = None,
    ) -> List[AuditEntry]:
        query = select(AuditEntryRow)
        if drift_id:
            query = query.where(AuditEntryRow.drift_id == drift_id)
        if decision_id:
            query = query.where(AuditEntryRow.decision_id == decision_id)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(AuditEntryRow.timestamp))
            return [row.to_domain() for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Managed resources
    # ------------------------------------------------------------------

    async def get_resource(self, key: str) -> Optional[ManagedResourceRow]:
        async with self.session_factory() as session:
            return await session.get(ManagedResourceRow, key)

    async def observe_resource(
        self,
        identity: ResourceIdentity,
        desired_present: bool,
        live_present: bool,
        desired_revision: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ManagedResourceRow:
        """Record a comparison pass; creates the resource on first observation."""
        now = now or utcnow()
        async with self.session_factory() as session:
            row = await session.get(ManagedResourceRow, identity.key)
            if row is None:
                row = self._new_resource(identity, now)
                session.add(row)

            row.desired_present = desired_present
            row.live_present = live_present
            row.desired_revision = desired_revision
            row.last_compared_at = now
            if desired_present or live_present:
                row.absent_since = None
                if row.archived:
                    logger.info(f"Resource {identity.key} seen again; unarchiving")
                    row.archived = False
            elif row.absent_since is None:
                row.absent_since = now

            await session.commit()
            return row

    async def set_error_state(self, identity: ResourceIdentity, message: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(ManagedResourceRow, identity.key)
            if row is None:
                row = self._new_resource(identity, utcnow())
                session.add(row)
            if row.error_state != message:
                row.error_state = message
                row.error_at = utcnow()
            await session.commit()

    async def clear_error_state(self, key: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(ManagedResourceRow, key)
            if row is not None and row.error_state is not None:
                row.error_state = None
                row.error_at = None
                await session.commit()

    async def list_error_states(self, environment: Optional[str] = None) -> List[ManagedResourceRow]:
        query = select(ManagedResourceRow).where(ManagedResourceRow.error_state.is_not(None))
        if environment:
            query = query.where(ManagedResourceRow.environment == environment)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(ManagedResourceRow.key))
            return list(result.scalars().all())

    async def archive_absent_resources(self, cutoff: datetime) -> int:
        """Archive resources absent from both sources since before ``cutoff``."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(ManagedResourceRow)
                .where(ManagedResourceRow.archived.is_(False))
                .where(ManagedResourceRow.absent_since.is_not(None))
                .where(ManagedResourceRow.absent_since < cutoff)
                .values(archived=True)
            )
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _new_resource(identity: ResourceIdentity, now: datetime) -> ManagedResourceRow:
        return ManagedResourceRow(
            key=identity.key,
            environment=identity.environment,
            namespace=identity.namespace,
            kind=identity.kind,
            name=identity.name,
            first_seen_at=now,
        )

    @staticmethod
    async def _stage_related(session, record: DriftRecord, change: RecordChange) -> None:
        for decision in change.decisions:
            # merge: a decision is inserted once and completed later
            await session.merge(RemediationDecisionRow.from_domain(decision, record.identity.key))
        for entry in change.audit:
            session.add(AuditEntryRow.from_domain(entry))
        stage_events(session, change.events)

    def _after_commit(self, events: List[DriftEvent]) -> None:
        if events and self.event_bus is not None:
            self.event_bus.published(events)
