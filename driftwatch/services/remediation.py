"""
Remediation Engine
------------------
State machine deciding whether a classified drift is auto-remediated,
queued for approval, or left for manual action:

    open -> evaluating -> (auto-apply | awaiting-approval | no-action)
         -> remediating -> (resolved | failed)

``failed`` only leaves through an explicit re-approval request; there are
no silent retries of an unsafe action. A single remediation is in flight
per resource, enforced by a keyed lock that is held for decision-making
and the write action only, with a maximum hold time that forces ``failed``.
Every transition writes an immutable audit entry in the same transaction
as the record update.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from pydantic import BaseModel

from driftwatch.core.drift.comparator import compare_raw
from driftwatch.core.drift.normalizer import NormalizationRegistry
from driftwatch.core.drift.severity import ScoringPolicy
from driftwatch.core.drift.types import (
    REMEDIATION_TRANSITIONS, AuditEntry, DriftClass, DriftEvent, DriftRecord,
    DriftStatus, EventType, RemediationAction, RemediationDecision,
    RemediationOutcome, RemediationState, Severity, can_transition, utcnow
)
from driftwatch.core.errors import (
    InvalidTransition, ProviderUnavailable, RecordNotFound, RemediationConflict,
    RemediationFailed, SourceUnavailable
)
from driftwatch.core.keyed import KeyedLocks
from driftwatch.core.observability import REMEDIATION_COUNTER, HealthMonitor, tracer
from driftwatch.core.retry import retry_with_backoff
from driftwatch.services.collaborators import ResourceProvider
from driftwatch.services.resolver import DesiredStateResolver
from driftwatch.services.store import DriftStore, RecordChange
from driftwatch.services.watcher import LiveStateWatcher

logger = logging.getLogger(__name__)

CONSUMER_NAME = "remediation"

# States a crashed process may leave behind
INTERRUPTED_STATES = (
    RemediationState.EVALUATING, RemediationState.AUTO_APPLY, RemediationState.REMEDIATING,
)


class RemediationPolicy(BaseModel):
    """Tunables of the remediation state machine."""

    enabled: bool = True
    ceiling: Severity = Severity.HIGH
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    lock_timeout_seconds: float = 300.0
    conflict_delay_seconds: float = 10.0
    propose_unmanaged: bool = False

    @classmethod
    def from_settings(cls, settings) -> "RemediationPolicy":
        return cls(
            enabled=settings.AUTO_REMEDIATION_ENABLED,
            ceiling=Severity.parse(settings.AUTO_REMEDIATION_CEILING),
            max_retries=settings.REMEDIATION_MAX_RETRIES,
            retry_delay_seconds=settings.REMEDIATION_RETRY_DELAY_SECONDS,
            lock_timeout_seconds=settings.REMEDIATION_LOCK_TIMEOUT_SECONDS,
            conflict_delay_seconds=settings.REMEDIATION_CONFLICT_DELAY_SECONDS,
            propose_unmanaged=settings.UNMANAGED_REMEDIATION == "propose",
        )


class RemediationEngine:
    """Consumes ``classified`` events and drives the remediation state machine."""

    def __init__(
        self,
        store: DriftStore,
        provider: ResourceProvider,
        resolver: DesiredStateResolver,
        watcher: LiveStateWatcher,
        policy: Optional[RemediationPolicy] = None,
        scoring: Optional[ScoringPolicy] = None,
        registry: Optional[NormalizationRegistry] = None,
        locks: Optional[KeyedLocks] = None,
        health: Optional[HealthMonitor] = None,
    ):
        self.store = store
        self.provider = provider
        self.resolver = resolver
        self.watcher = watcher
        self.policy = policy or RemediationPolicy()
        self.scoring = scoring or ScoringPolicy()
        self.registry = registry
        self.locks = locks or KeyedLocks()
        self.health = health
        self._inflight: Dict[str, asyncio.Task] = {}
        self._deferred: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Event consumption
    # ------------------------------------------------------------------

    async def handle_event(self, event: DriftEvent) -> None:
        """Event bus handler; idempotent because evaluation requires state ``open``."""
        if event.event_type == EventType.CLASSIFIED:
            await self.evaluate(event.drift_id)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(self, record: DriftRecord) -> Tuple[RemediationAction, str]:
        """
        Choose the remediation action for a classified record.

        Returns:
            Tuple of (action, rationale)
        """
        severity = record.severity or Severity.CRITICAL
        if not record.eligible:
            return RemediationAction.NO_ACTION, "not eligible for remediation; manual action required"
        if record.drift_class == DriftClass.UNMANAGED:
            return RemediationAction.REQUEST_APPROVAL, "adoption requires review in the configuration source"
        if not self.policy.enabled:
            return RemediationAction.REQUEST_APPROVAL, "auto-remediation disabled"
        if severity.rank >= self.policy.ceiling.rank:
            return (
                RemediationAction.REQUEST_APPROVAL,
                f"severity {severity.value} at or above auto-remediation ceiling {self.policy.ceiling.value}",
            )
        return (
            RemediationAction.AUTO_APPLY,
            f"severity {severity.value} below auto-remediation ceiling {self.policy.ceiling.value}",
        )

    async def evaluate(self, drift_id: UUID) -> Optional[RemediationDecision]:
        """
        Run the evaluation step for a drift in state ``open``.

        Lock contention defers the evaluation instead of dropping it.

        Returns:
            The decision taken, or None when nothing was evaluated
        """
        try:
            record = await self.store.get_record(drift_id)
        except RecordNotFound:
            logger.warning(f"Remediation skipped: drift {drift_id} no longer exists")
            return None

        if (
            not record.is_active
            or record.status == DriftStatus.SUPPRESSED
            or record.remediation_state != RemediationState.OPEN
            or record.severity is None
            or record.needs_classification
        ):
            return None

        key = record.identity.key
        if not await self.locks.try_acquire(key):
            self._defer(drift_id, RemediationConflict(key))
            return None

        handed_off = False
        try:
            record = await self._advance(drift_id, RemediationState.OPEN, RemediationState.EVALUATING,
                                         message="evaluation started")
            action, rationale = self.decide(record)
            decision = RemediationDecision(drift_id=drift_id, action=action, rationale=rationale)
            REMEDIATION_COUNTER.labels(action=action.value, outcome="decided").inc()
            logger.info(f"Remediation decision for {key}: {action.value} ({rationale})")

            if action == RemediationAction.AUTO_APPLY:
                await self._advance(drift_id, RemediationState.EVALUATING, RemediationState.AUTO_APPLY,
                                    decision=decision, message=rationale)
                record = await self._begin(drift_id, RemediationState.AUTO_APPLY, decision)
                self._spawn_execution(record, decision)
                handed_off = True
            elif action == RemediationAction.REQUEST_APPROVAL:
                if record.drift_class == DriftClass.UNMANAGED and self.policy.propose_unmanaged:
                    decision = await self._propose_adoption(record, decision)
                await self._advance(drift_id, RemediationState.EVALUATING, RemediationState.AWAITING_APPROVAL,
                                    decision=decision, events=[EventType.APPROVAL_REQUESTED], message=rationale)
            else:
                await self._advance(drift_id, RemediationState.EVALUATING, RemediationState.NO_ACTION,
                                    decision=decision, message=rationale)
            return decision
        except InvalidTransition as e:
            # The record moved on concurrently (re-opened, resolved or expired)
            logger.info(f"Remediation evaluation for {key} abandoned: {str(e)}")
            return None
        finally:
            if not handed_off:
                self.locks.release(key)

    async def _propose_adoption(self, record: DriftRecord, decision: RemediationDecision) -> RemediationDecision:
        live = self.watcher.get(record.identity)
        if live is None or not live.present:
            return decision
        try:
            reference = await self.resolver.propose_remediation_commit(
                record.identity, live.state, f"Adopt unmanaged {record.identity.service_key}"
            )
        except SourceUnavailable as e:
            logger.warning(f"Adoption proposal for {record.identity.key} failed: {str(e)}")
            return decision
        return decision.model_copy(update={"rationale": f"{decision.rationale}; proposal {reference}"})

    def _defer(self, drift_id: UUID, conflict: RemediationConflict) -> None:
        delay = self.policy.conflict_delay_seconds
        logger.warning(f"{conflict}; deferring evaluation of {drift_id} by {delay:.0f}s")
        REMEDIATION_COUNTER.labels(action="evaluate", outcome="deferred").inc()

        async def retry_later() -> None:
            await asyncio.sleep(delay)
            await self.evaluate(drift_id)

        task = asyncio.create_task(retry_later())
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def approve(self, drift_id: UUID, approver: str) -> RemediationDecision:
        """
        External approval event: start a remediation awaiting approval.

        Raises:
            InvalidTransition: The drift is not awaiting approval
            RemediationConflict: Another remediation holds the resource
        """
        record = await self.store.get_record(drift_id)
        if record.remediation_state != RemediationState.AWAITING_APPROVAL:
            raise InvalidTransition(
                f"Drift {drift_id} is {record.remediation_state.value}, not awaiting approval"
            )
        if record.drift_class == DriftClass.UNMANAGED:
            raise InvalidTransition("Unmanaged resources are adopted through the configuration source review")

        key = record.identity.key
        if not await self.locks.try_acquire(key):
            raise RemediationConflict(key)

        handed_off = False
        try:
            pending = await self._pending_request(drift_id)
            decision = (pending or RemediationDecision(
                drift_id=drift_id,
                action=RemediationAction.REQUEST_APPROVAL,
                rationale="approved by operator",
            )).model_copy(update={"approved_by": approver})
            record = await self._begin(drift_id, RemediationState.AWAITING_APPROVAL, decision, actor=approver)
            self._spawn_execution(record, decision)
            handed_off = True
            logger.info(f"Remediation of {key} approved by {approver}")
            return decision
        finally:
            if not handed_off:
                self.locks.release(key)

    async def request_reapproval(self, drift_id: UUID, actor: str, reason: str = "") -> RemediationDecision:
        """Move a failed remediation back to awaiting approval with a new decision."""
        decision = RemediationDecision(
            drift_id=drift_id,
            action=RemediationAction.REQUEST_APPROVAL,
            rationale=reason or "re-approval requested after failed remediation",
        )
        await self._advance(drift_id, RemediationState.FAILED, RemediationState.AWAITING_APPROVAL,
                            decision=decision, events=[EventType.APPROVAL_REQUESTED],
                            actor=actor, message=decision.rationale)
        return decision

    async def acknowledge(self, drift_id: UUID, actor: str) -> DriftRecord:
        return await self._set_status(drift_id, DriftStatus.ACKNOWLEDGED, EventType.ACKNOWLEDGED, actor,
                                      "acknowledged by operator")

    async def suppress(self, drift_id: UUID, actor: str, reason: str = "") -> DriftRecord:
        return await self._set_status(drift_id, DriftStatus.SUPPRESSED, EventType.SUPPRESSED, actor,
                                      reason or "suppressed by operator")

    async def _set_status(
        self, drift_id: UUID, target: DriftStatus, event_type: EventType, actor: str, message: str
    ) -> DriftRecord:
        def mutate(current: DriftRecord) -> RecordChange:
            if not can_transition(current.status, target):
                raise InvalidTransition(f"Drift {drift_id} cannot move from {current.status.value} to {target.value}")
            updated = current.model_copy(update={"status": target})
            return RecordChange(
                record=updated,
                events=[DriftEvent.for_record(updated, event_type, actor=actor)],
                audit=[AuditEntry(
                    drift_id=drift_id,
                    resource_key=current.identity.key,
                    from_state=current.status.value,
                    to_state=target.value,
                    actor=actor,
                    message=message,
                )],
            )

        return await self.store.modify(drift_id, mutate)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _begin(
        self,
        drift_id: UUID,
        from_state: RemediationState,
        decision: RemediationDecision,
        actor: str = "engine",
    ) -> DriftRecord:
        """Enter ``remediating``; requires an auto-apply decision or an approval."""
        if decision.action != RemediationAction.AUTO_APPLY and not decision.approved_by:
            raise InvalidTransition("Remediation requires an auto-apply decision or an external approval")
        return await self._advance(
            drift_id, from_state, RemediationState.REMEDIATING,
            status=DriftStatus.REMEDIATING,
            decision=decision,
            events=[EventType.REMEDIATION_STARTED],
            actor=actor,
            message=f"remediation started ({decision.action.value})",
        )

    def _spawn_execution(self, record: DriftRecord, decision: RemediationDecision) -> None:
        key = record.identity.key
        task = asyncio.create_task(self._execute(record, decision), name=f"remediate:{key}")
        self._inflight[key] = task

    async def _execute(self, record: DriftRecord, decision: RemediationDecision) -> None:
        """Apply and confirm convergence; always releases the resource lock."""
        key = record.identity.key
        progress = {"decision": decision}
        try:
            with tracer.start_as_current_span("remediation.apply"):
                await asyncio.wait_for(
                    self._apply_until_converged(record, progress),
                    timeout=self.policy.lock_timeout_seconds,
                )
        except asyncio.TimeoutError:
            await self._fail(record.id, progress["decision"],
                             f"lock held longer than {self.policy.lock_timeout_seconds:.0f}s")
        except RemediationFailed as e:
            await self._fail(record.id, progress["decision"], str(e))
        except asyncio.CancelledError:
            logger.warning(f"Remediation of {key} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Remediation of {key} crashed: {str(e)}")
            await self._fail(record.id, progress["decision"], f"remediation error: {e}")
        finally:
            self.locks.release(key)
            if self._inflight.get(key) is asyncio.current_task():
                self._inflight.pop(key, None)

    async def _apply_until_converged(self, record: DriftRecord, progress: Dict[str, RemediationDecision]) -> None:
        identity = record.identity
        desired = self.resolver.get(identity)
        if desired is None or not desired.declared:
            raise RemediationFailed(f"No desired state to apply for {identity.key}")

        attempts = self.policy.max_retries
        for attempt in range(1, attempts + 1):
            progress["decision"] = progress["decision"].model_copy(update={"attempts": attempt})
            try:
                await retry_with_backoff(
                    lambda: self.provider.apply_state(identity, desired.manifest),
                    name=f"apply {identity.key}",
                    max_retries=self.watcher.max_retries,
                    base_delay=self.watcher.base_delay,
                    max_delay=self.watcher.max_delay,
                    retry_on=(ProviderUnavailable,),
                )
                live = await self.watcher.refresh(identity)
            except ProviderUnavailable as e:
                logger.warning(f"Remediation attempt {attempt} for {identity.key} could not reach provider: {e}")
            else:
                remaining = compare_raw(
                    desired.manifest, live, identity, self.registry, self.scoring, revision=desired.revision
                )
                if remaining is None:
                    await self._succeed(record.id, progress["decision"])
                    return
                logger.warning(
                    f"Remediation attempt {attempt}/{attempts} for {identity.key} did not converge: "
                    f"{len(remaining.diffs)} differences remain"
                )
            if attempt < attempts:
                await asyncio.sleep(self.policy.retry_delay_seconds)

        raise RemediationFailed(
            f"{identity.key} did not converge after {attempts} attempts", attempts=attempts
        )

    async def _succeed(self, drift_id: UUID, decision: RemediationDecision) -> None:
        decision = decision.model_copy(update={"outcome": RemediationOutcome.SUCCESS, "executed_at": utcnow()})
        await self._advance(drift_id, RemediationState.REMEDIATING, RemediationState.RESOLVED,
                            status=DriftStatus.RESOLVED, decision=decision,
                            events=[EventType.RESOLVED], message="converged")
        REMEDIATION_COUNTER.labels(action=decision.action.value, outcome=RemediationOutcome.SUCCESS.value).inc()
        logger.info(f"Remediation of drift {drift_id} converged after {decision.attempts} attempt(s)")

    async def _fail(self, drift_id: UUID, decision: RemediationDecision, reason: str) -> None:
        decision = decision.model_copy(update={
            "outcome": RemediationOutcome.FAILED,
            "executed_at": utcnow(),
            "rationale": f"{decision.rationale}; failed: {reason}",
        })
        try:
            record = await self.store.get_record(drift_id)
            status = DriftStatus.OPEN if record.status == DriftStatus.REMEDIATING else None
            await self._advance(drift_id, record.remediation_state, RemediationState.FAILED,
                                status=status, decision=decision,
                                events=[EventType.FAILED], message=reason)
        except (InvalidTransition, RecordNotFound) as e:
            logger.warning(f"Could not record remediation failure for {drift_id}: {str(e)}")
        REMEDIATION_COUNTER.labels(action=decision.action.value, outcome=RemediationOutcome.FAILED.value).inc()
        # Surfaced for manual attention; the drift stays open
        logger.error(f"Remediation of drift {drift_id} failed: {reason}")

    # ------------------------------------------------------------------
    # State machine plumbing
    # ------------------------------------------------------------------

    async def _advance(
        self,
        drift_id: UUID,
        from_state: RemediationState,
        to_state: RemediationState,
        status: Optional[DriftStatus] = None,
        decision: Optional[RemediationDecision] = None,
        events: Optional[List[EventType]] = None,
        actor: str = "engine",
        message: str = "",
    ) -> DriftRecord:
        """Conditionally move the record between remediation states."""
        if to_state not in REMEDIATION_TRANSITIONS[from_state]:
            raise InvalidTransition(f"Remediation cannot move from {from_state.value} to {to_state.value}")

        def mutate(current: DriftRecord) -> RecordChange:
            if current.remediation_state != from_state:
                raise InvalidTransition(
                    f"Drift {drift_id} is {current.remediation_state.value}, expected {from_state.value}"
                )
            update = {"remediation_state": to_state}
            status_changed = False
            if status is not None and current.status != status and current.is_active:
                if not can_transition(current.status, status):
                    raise InvalidTransition(
                        f"Drift {drift_id} cannot move from {current.status.value} to {status.value}"
                    )
                update["status"] = status
                status_changed = True
                if status == DriftStatus.RESOLVED:
                    update["resolved_at"] = utcnow()
            updated = current.model_copy(update=update)

            extra = {"actor": actor}
            if decision is not None:
                extra.update(decision_id=str(decision.id), action=decision.action.value)
            emitted = [
                DriftEvent.for_record(updated, event_type, **extra)
                for event_type in events or []
                # The pipeline may already have resolved the record
                if status_changed or event_type != EventType.RESOLVED
            ]
            return RecordChange(
                record=updated,
                events=emitted,
                decisions=[decision] if decision is not None else [],
                audit=[AuditEntry(
                    drift_id=drift_id,
                    decision_id=decision.id if decision else None,
                    resource_key=current.identity.key,
                    from_state=from_state.value,
                    to_state=to_state.value,
                    actor=actor,
                    message=message,
                )],
            )

        return await self.store.modify(drift_id, mutate)

    async def _pending_request(self, drift_id: UUID) -> Optional[RemediationDecision]:
        for decision in reversed(await self.store.list_decisions(drift_id)):
            if decision.action == RemediationAction.REQUEST_APPROVAL and decision.outcome is None:
                return decision
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def in_flight(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    def cancel(self, key: str) -> bool:
        """Cancel the in-flight remediation for a resource, if any."""
        task = self._inflight.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"Cancelled in-flight remediation for {key}")
        return True

    async def recover_interrupted(self) -> int:
        """
        Fail remediations a previous process left mid-flight.

        They need a fresh approval rather than a silent retry.
        """
        recovered = 0
        for record in await self.store.list_by_remediation_state(INTERRUPTED_STATES):
            state = record.remediation_state
            decision = RemediationDecision(
                drift_id=record.id,
                action=RemediationAction.REQUEST_APPROVAL,
                rationale=f"interrupted while {state.value}",
                outcome=RemediationOutcome.FAILED,
                executed_at=utcnow(),
            )
            try:
                if state == RemediationState.EVALUATING:
                    await self._advance(record.id, state, RemediationState.AWAITING_APPROVAL,
                                        decision=decision.model_copy(update={"outcome": None, "executed_at": None}),
                                        events=[EventType.APPROVAL_REQUESTED], message=decision.rationale)
                else:
                    status = DriftStatus.OPEN if record.status == DriftStatus.REMEDIATING else None
                    await self._advance(record.id, state, RemediationState.FAILED,
                                        status=status, decision=decision,
                                        events=[EventType.FAILED], message=decision.rationale)
                recovered += 1
            except InvalidTransition as e:
                logger.warning(f"Could not recover drift {record.id}: {str(e)}")
        if recovered:
            logger.warning(f"Recovered {recovered} remediations interrupted by a restart")
        return recovered

    async def settle(self) -> None:
        """Wait until no deferred evaluation or remediation is pending."""
        while True:
            tasks = [t for t in list(self._deferred) + list(self._inflight.values()) if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._inflight.values()) + list(self._deferred)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
