"""
Drift Correlator
----------------
De-duplicates drift observations over time and groups drift records
across environments.

Repeated observations of an unresolved drift update the single active
record (``last_seen_at`` window) instead of opening new ones, and repeat
notifications are suppressed while the diff stays unchanged. The
cross-environment view is derived from records on demand and owns no
state of its own.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from pydantic import BaseModel

from driftwatch.core.drift.types import (
    DriftRecord, DriftStatus, Severity, utcnow
)

logger = logging.getLogger(__name__)


class CorrelationAction(str, Enum):
    CREATE = "create"      # no active record, open a new one
    MERGE = "merge"        # identical or superset diff, same record
    REVISE = "revise"      # diff changed shape, same record re-evaluated
    RESOLVE = "resolve"    # states converged
    NOOP = "noop"


class CorrelationResult(BaseModel):
    action: CorrelationAction
    record: Optional[DriftRecord] = None
    material_change: bool = False
    notify: bool = False
    reopened: bool = False


class CorrelatedDrift(BaseModel):
    """A logical resource drifting in several environments at once."""

    service_key: str
    kind: str
    name: str
    environments: List[str]
    record_ids: List[UUID]
    first_detected_at: datetime
    last_detected_at: datetime
    common_paths: List[str]
    max_severity: Optional[Severity] = None

    @property
    def spreading(self) -> bool:
        return len(self.environments) > 1


class Correlator:
    """Time and cross-environment correlation of drift records."""

    def __init__(self, suppression_window_seconds: int = 3600, correlation_window_seconds: int = 3600):
        self.suppression_window = timedelta(seconds=suppression_window_seconds)
        self.correlation_window = timedelta(seconds=correlation_window_seconds)

    def correlate(
        self,
        active: Optional[DriftRecord],
        candidate: Optional[DriftRecord],
        now: Optional[datetime] = None,
    ) -> CorrelationResult:
        """
        Fold a fresh comparison result into the resource's active record.

        Args:
            active: The resource's current active record, if any
            candidate: Comparator output, None when states are equal
            now: Observation time

        Returns:
            CorrelationResult describing what the store should write
        """
        now = now or utcnow()

        if candidate is None:
            if active is None:
                return CorrelationResult(action=CorrelationAction.NOOP)
            resolved = active.model_copy(update={
                "status": DriftStatus.RESOLVED,
                "resolved_at": now,
                "last_seen_at": now,
            })
            return CorrelationResult(action=CorrelationAction.RESOLVE, record=resolved, notify=True)

        if active is None:
            created = candidate.model_copy(update={
                "detected_at": now,
                "last_seen_at": now,
                "last_notified_at": now,
            })
            return CorrelationResult(
                action=CorrelationAction.CREATE, record=created, material_change=True, notify=True
            )

        update = {
            "diffs": candidate.diffs,
            "score": candidate.score,
            "drift_class": candidate.drift_class,
            "desired_revision": candidate.desired_revision,
            "desired_fingerprint": candidate.desired_fingerprint,
            "live_fingerprint": candidate.live_fingerprint,
            "last_seen_at": now,
            "occurrence_count": active.occurrence_count + 1,
        }
        suppressed = active.status == DriftStatus.SUPPRESSED
        same_class = candidate.drift_class == active.drift_class

        if same_class and candidate.changed_paths >= active.changed_paths:
            identical = candidate.diff_fingerprint == active.diff_fingerprint
            if identical:
                last = active.last_notified_at or active.detected_at
                notify = not suppressed and now - last >= self.suppression_window
            else:
                notify = not suppressed
            if notify:
                update["last_notified_at"] = now
            return CorrelationResult(
                action=CorrelationAction.MERGE,
                record=active.model_copy(update=update),
                material_change=not identical,
                notify=notify,
            )

        if suppressed:
            logger.info(f"Drift {active.id} changed shape while suppressed; reopening")
            update["status"] = DriftStatus.OPEN
        update["last_notified_at"] = now
        return CorrelationResult(
            action=CorrelationAction.REVISE,
            record=active.model_copy(update=update),
            material_change=True,
            notify=True,
            reopened=suppressed,
        )

    def cross_environment_view(self, records: Iterable[DriftRecord]) -> List[CorrelatedDrift]:
        """
        Group active records of the same logical resource across environments.

        Records of one resource name fall into the same group when their
        detection times lie within the correlation window of the group's
        first detection. Only groups spanning two or more environments are
        returned.
        """
        by_service: Dict[str, List[DriftRecord]] = defaultdict(list)
        for record in records:
            if record.is_active:
                by_service[record.identity.service_key].append(record)

        groups: List[CorrelatedDrift] = []
        for service_key in sorted(by_service):
            ordered = sorted(by_service[service_key], key=lambda r: (r.detected_at, str(r.id)))
            cluster: List[DriftRecord] = []
            for record in ordered:
                if cluster and record.detected_at - cluster[0].detected_at > self.correlation_window:
                    self._emit(service_key, cluster, groups)
                    cluster = []
                cluster.append(record)
            if cluster:
                self._emit(service_key, cluster, groups)

        groups.sort(key=lambda g: (-len(g.environments), g.service_key, g.first_detected_at))
        return groups

    @staticmethod
    def _emit(service_key: str, cluster: List[DriftRecord], groups: List[CorrelatedDrift]) -> None:
        environments = sorted({r.identity.environment for r in cluster})
        if len(environments) < 2:
            return
        common = set.intersection(*(set(r.changed_paths) for r in cluster))
        severities = [r.severity for r in cluster if r.severity is not None]
        groups.append(CorrelatedDrift(
            service_key=service_key,
            kind=cluster[0].identity.kind,
            name=cluster[0].identity.name,
            environments=environments,
            record_ids=[r.id for r in cluster],
            first_detected_at=cluster[0].detected_at,
            last_detected_at=cluster[-1].detected_at,
            common_paths=sorted(common),
            max_severity=max(severities, key=lambda s: s.rank) if severities else None,
        ))
