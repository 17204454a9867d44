"""
Drift Detection Pipeline
------------------------
Turns desired/live change signals into drift record writes.

Resolver and watcher notifications only enqueue the resource key, so
comparisons are always deferred work and never block ingestion. A pool of
worker tasks processes different resources in parallel; for one resource,
snapshots are taken under a sequence ticket and applied in ticket order so
an older snapshot can never overwrite a newer comparison result.
Classification happens outside the per-resource gate, and its result is
written back only if the diff it classified is still the current one.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from driftwatch.core.drift.classifier import Classifier
from driftwatch.core.drift.comparator import compare_raw
from driftwatch.core.drift.correlator import CorrelationAction, Correlator
from driftwatch.core.drift.normalizer import NormalizationRegistry
from driftwatch.core.drift.severity import ScoringPolicy
from driftwatch.core.drift.types import (
    AuditEntry, DriftEvent, DriftRecord, DriftStatus, EventType,
    RemediationState, ResourceIdentity, utcnow
)
from driftwatch.core.errors import DataIntegrityError, StaleWriteError, UnsupportedKind
from driftwatch.core.keyed import SequenceGate
from driftwatch.core.observability import (
    COMPARISON_COUNTER, COMPARISON_DURATION, DRIFT_OPENED_COUNTER, HealthMonitor, tracer
)
from driftwatch.services.remediation import RemediationEngine
from driftwatch.services.resolver import DesiredStateResolver
from driftwatch.services.store import DriftStore, RecordChange
from driftwatch.services.watcher import LiveStateWatcher

logger = logging.getLogger(__name__)

# Remediation states that restart at ``open`` when the diff changes materially
REEVALUATE_STATES = (RemediationState.AWAITING_APPROVAL, RemediationState.NO_ACTION)


class DriftEngine:
    """Worker pool comparing resources and maintaining their drift records."""

    def __init__(
        self,
        store: DriftStore,
        resolver: DesiredStateResolver,
        watcher: LiveStateWatcher,
        classifier: Classifier,
        correlator: Optional[Correlator] = None,
        policy: Optional[ScoringPolicy] = None,
        registry: Optional[NormalizationRegistry] = None,
        worker_count: int = 8,
        health: Optional[HealthMonitor] = None,
        remediation: Optional[RemediationEngine] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.watcher = watcher
        self.classifier = classifier
        self.correlator = correlator or Correlator()
        self.policy = policy or ScoringPolicy()
        self.registry = registry
        self.worker_count = worker_count
        self.health = health
        self.remediation = remediation
        self.gate = SequenceGate()
        self._pending: Dict[str, ResourceIdentity] = {}
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

        resolver.add_listener(self.submit)
        resolver.add_ready_listener(self.submit_all)
        watcher.add_listener(self.submit)
        watcher.add_resync_listener(self.submit_all)

    # ------------------------------------------------------------------
    # Work queue
    # ------------------------------------------------------------------

    def submit(self, identity: ResourceIdentity) -> None:
        """Schedule a comparison; repeated signals for a queued key coalesce."""
        key = identity.key
        if key in self._pending:
            return
        self._pending[key] = identity
        self._queue.put_nowait(key)

    def submit_all(self) -> None:
        for identity in self.resolver.keys() + self.watcher.keys():
            self.submit(identity)

    @property
    def backlog(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every queued comparison has been processed."""
        await self._queue.join()

    async def _worker(self, number: int) -> None:
        while True:
            key = await self._queue.get()
            identity = self._pending.pop(key, None)
            try:
                if identity is not None:
                    await self.process(identity)
            except asyncio.CancelledError:
                raise
            except StaleWriteError as e:
                logger.debug(f"Worker {number}: {str(e)}; re-queueing {key}")
                self.submit(identity)
            except Exception as e:
                # One resource's failure never stops the pool
                logger.exception(f"Worker {number}: comparison of {key} failed: {str(e)}")
                COMPARISON_COUNTER.labels(outcome="error").inc()
                await self._record_error(identity, f"comparison failed: {e}")
            finally:
                self._queue.task_done()

    async def _record_error(self, identity: Optional[ResourceIdentity], message: str) -> None:
        if identity is None:
            return
        try:
            await self.store.set_error_state(identity, message)
        except Exception as e:
            logger.error(f"Could not record error state for {identity.key}: {str(e)}")

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    async def process(self, identity: ResourceIdentity) -> Optional[DriftRecord]:
        """
        Compare one resource and fold the result into its drift record.

        Args:
            identity: Resource to compare

        Returns:
            The resource's record after this pass (resolved or expired
            records included), or None when nothing was compared or written
        """
        key = identity.key
        if not self.watcher.ready or not self.resolver.ready:
            COMPARISON_COUNTER.labels(outcome="not_ready").inc()
            return None
        if self.watcher.is_stale():
            # Comparisons against stale live state are misleading
            COMPARISON_COUNTER.labels(outcome="stale").inc()
            logger.debug(f"Skipping {key}: live state is stale")
            return None

        desired = self.resolver.get(identity)
        if desired is not None and desired.paused:
            COMPARISON_COUNTER.labels(outcome="paused").inc()
            return None
        if desired is not None and desired.error:
            COMPARISON_COUNTER.labels(outcome="invalid").inc()
            return None

        live = self.watcher.get(identity)
        desired_raw = desired.manifest if desired else None
        revision = desired.revision if desired else None
        live_raw = live.state if live else None

        ticket = self.gate.ticket(key)
        async with self.gate.turn(key, ticket):
            if desired_raw is None and live_raw is None:
                return await self._expire(identity)

            with COMPARISON_DURATION.time(), tracer.start_as_current_span("drift.compare"):
                try:
                    candidate = compare_raw(
                        desired_raw, live_raw, identity, self.registry, self.policy, revision=revision
                    )
                except UnsupportedKind as e:
                    # Cannot compare is not the same as no drift
                    logger.warning(f"Excluding {key} from comparison: {str(e)}")
                    COMPARISON_COUNTER.labels(outcome="unsupported").inc()
                    await self.store.set_error_state(identity, str(e))
                    return None
                except DataIntegrityError as e:
                    logger.error(f"Cannot compare {key}: {str(e)}")
                    COMPARISON_COUNTER.labels(outcome="invalid").inc()
                    await self.store.set_error_state(identity, str(e))
                    return None

            record = await self._fold(identity, candidate)
            await self.store.observe_resource(
                identity,
                desired_present=desired_raw is not None,
                live_present=live_raw is not None,
                desired_revision=revision,
            )
            await self.store.clear_error_state(key)
            COMPARISON_COUNTER.labels(outcome="drift" if candidate else "in_sync").inc()

        if record is not None and record.is_active and record.needs_classification:
            return await self._classify(record)
        return record

    async def _fold(self, identity: ResourceIdentity, candidate: Optional[DriftRecord]) -> Optional[DriftRecord]:
        """Write the correlator's verdict for one comparison result."""
        active = await self.store.get_active(identity.key)
        result = self.correlator.correlate(active, candidate)

        if result.action == CorrelationAction.NOOP:
            return None

        record = result.record
        if result.action == CorrelationAction.CREATE:
            created = await self.store.create_record(RecordChange(
                record=record,
                events=[DriftEvent.for_record(record, EventType.DETECTED, diff_count=len(record.diffs))],
                audit=[self._audit(record, None, record.status.value, "drift detected")],
            ))
            DRIFT_OPENED_COUNTER.labels(drift_class=record.drift_class.value).inc()
            logger.info(
                f"Drift detected on {identity.key}: {record.drift_class.value}, "
                f"{len(record.diffs)} differences, score {record.score:.3f}"
            )
            return created

        events: List[DriftEvent] = []
        audit: List[AuditEntry] = []
        if result.action == CorrelationAction.RESOLVE:
            events.append(DriftEvent.for_record(record, EventType.RESOLVED, reason="converged"))
            audit.append(self._audit(record, active.status.value, record.status.value, "states converged"))
            logger.info(f"Drift {record.id} on {identity.key} resolved")
        else:
            if result.material_change and record.remediation_state in REEVALUATE_STATES:
                audit.append(self._audit(
                    record, record.remediation_state.value, RemediationState.OPEN.value,
                    "diff changed; re-evaluating remediation",
                ))
                record = record.model_copy(update={"remediation_state": RemediationState.OPEN})
            if result.reopened:
                audit.append(self._audit(record, DriftStatus.SUPPRESSED.value, record.status.value,
                                         "diff changed shape while suppressed"))
            if result.notify:
                events.append(DriftEvent.for_record(
                    record, EventType.UPDATED,
                    diff_count=len(record.diffs),
                    material_change=result.material_change,
                    reopened=result.reopened,
                ))

        return await self.store.update_record(
            RecordChange(record=record, events=events, audit=audit),
            expected_version=active.version,
        )

    async def _expire(self, identity: ResourceIdentity) -> Optional[DriftRecord]:
        """Resource gone from both sources: cancel its remediation and expire the record."""
        key = identity.key
        if self.remediation is not None:
            self.remediation.cancel(key)
        await self.store.observe_resource(identity, desired_present=False, live_present=False)

        active = await self.store.get_active(key)
        if active is None:
            return None
        now = utcnow()
        expired = active.model_copy(update={
            "status": DriftStatus.EXPIRED,
            "resolved_at": now,
            "last_seen_at": now,
        })
        record = await self.store.update_record(
            RecordChange(
                record=expired,
                events=[DriftEvent.for_record(expired, EventType.EXPIRED, reason="resource removed")],
                audit=[self._audit(expired, active.status.value, DriftStatus.EXPIRED.value, "resource removed")],
            ),
            expected_version=active.version,
        )
        logger.info(f"Drift {record.id} expired: {key} removed from desired and live state")
        return record

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def _classify(self, record: DriftRecord) -> DriftRecord:
        """Classify without holding the gate, then write back if still current."""
        key = record.identity.key
        fingerprint = record.diff_fingerprint
        assessment = await self.classifier.classify(record)

        ticket = self.gate.ticket(key)
        async with self.gate.turn(key, ticket):
            current = await self.store.get_active(key)
            if current is None or current.id != record.id or current.diff_fingerprint != fingerprint:
                logger.debug(f"Discarding classification of {record.id}: diff moved on")
                return current or record
            if not current.needs_classification:
                return current

            classified = current.model_copy(update={
                "severity": assessment.severity,
                "eligible": assessment.eligible,
                "confidence": assessment.confidence,
                "degraded": assessment.degraded,
                "classified_fingerprint": fingerprint,
            })
            event = DriftEvent.for_record(
                classified,
                EventType.CLASSIFIED,
                eligible=assessment.eligible,
                confidence=assessment.confidence,
                degraded=assessment.degraded,
                strategy=assessment.strategy,
                rationale=assessment.rationale,
            )
            stored = await self.store.update_record(
                RecordChange(record=classified, events=[event]),
                expected_version=current.version,
            )
        logger.info(
            f"Drift {stored.id} on {key} classified {assessment.severity.value} "
            f"(eligible={assessment.eligible}, degraded={assessment.degraded})"
        )
        return stored

    @staticmethod
    def _audit(record: DriftRecord, from_state: Optional[str], to_state: str, message: str) -> AuditEntry:
        return AuditEntry(
            drift_id=record.id,
            resource_key=record.identity.key,
            from_state=from_state,
            to_state=to_state,
            message=message,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"drift-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"Drift pipeline started with {self.worker_count} workers")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
