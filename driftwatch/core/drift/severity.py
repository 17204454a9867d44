"""
Drift Severity Classification
----------------------------
This module holds the tunable scoring policy and the deterministic rule
table used to turn a drift record into a severity class and a remediation
eligibility flag.

The severity classification helps prioritize responses to detected drift.
"""

from typing import Dict, Any, List, Iterable, Tuple

from pydantic import BaseModel, Field

from driftwatch.core.drift.normalizer import matches_any, path_matches
from driftwatch.core.drift.types import DriftClass, DriftRecord, FieldDiff, Severity


class ScoringPolicy(BaseModel):
    """Weights, thresholds and rule table for scoring and classification."""

    half_point: float = 2.0
    thresholds: Dict[str, float] = Field(
        default_factory=lambda: {"medium": 0.25, "high": 0.6, "critical": 0.85}
    )
    path_weights: Dict[str, float] = Field(default_factory=dict)
    default_weight: float = 1.0
    benign_paths: List[str] = Field(default_factory=list)
    benign_decay: float = 0.2
    missing_score: float = 0.7
    unmanaged_score: float = 0.1
    missing_severity: Severity = Severity.HIGH
    unmanaged_severity: Severity = Severity.LOW
    severity_floors: Dict[str, Severity] = Field(default_factory=dict)
    non_remediable_paths: List[str] = Field(default_factory=list)
    non_remediable_kinds: List[str] = Field(default_factory=list)
    unmanaged_remediable: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "ScoringPolicy":
        return cls(
            half_point=settings.SCORE_HALF_POINT,
            thresholds=settings.SEVERITY_THRESHOLDS,
            path_weights=settings.PATH_WEIGHTS,
            benign_paths=settings.BENIGN_PATHS,
            benign_decay=settings.BENIGN_DECAY,
            missing_score=settings.MISSING_SCORE,
            unmanaged_score=settings.UNMANAGED_SCORE,
            missing_severity=Severity.parse(settings.MISSING_SEVERITY),
            unmanaged_severity=Severity.parse(settings.UNMANAGED_SEVERITY),
            severity_floors={
                pattern: Severity.parse(level)
                for pattern, level in settings.SEVERITY_FLOOR_RULES.items()
            },
            non_remediable_paths=settings.NON_REMEDIABLE_PATHS,
            non_remediable_kinds=settings.NON_REMEDIABLE_KINDS,
            unmanaged_remediable=settings.UNMANAGED_REMEDIATION == "propose",
        )

    def weight_for(self, path: str) -> float:
        """Per-path weight, decayed for known-benign paths."""
        weights = [w for pattern, w in self.path_weights.items() if path_matches(path, pattern)]
        weight = max(weights) if weights else self.default_weight
        if matches_any(path, self.benign_paths):
            weight *= self.benign_decay
        return weight

    def score(self, weights: Iterable[float]) -> float:
        """Saturating score in [0, 1) from the sum of diff weights."""
        raw = sum(weights)
        if raw <= 0:
            return 0.0
        return round(raw / (raw + self.half_point), 6)


def severity_for_score(score: float, policy: ScoringPolicy) -> Severity:
    thresholds = policy.thresholds
    if score >= thresholds.get("critical", 1.0):
        return Severity.CRITICAL
    if score >= thresholds.get("high", 1.0):
        return Severity.HIGH
    if score >= thresholds.get("medium", 1.0):
        return Severity.MEDIUM
    return Severity.LOW


def _apply_floors(severity: Severity, diffs: List[FieldDiff], policy: ScoringPolicy) -> Severity:
    for diff in diffs:
        for pattern, floor in policy.severity_floors.items():
            if path_matches(diff.path, pattern) and floor.rank > severity.rank:
                severity = floor
    return severity


def calculate_severity(record: DriftRecord, policy: ScoringPolicy) -> Severity:
    """
    Calculate the rule-based severity of a drift record.

    Args:
        record: The drift record to evaluate
        policy: Scoring policy carrying thresholds and floor rules

    Returns:
        Severity class for the record
    """
    if record.drift_class == DriftClass.MISSING:
        severity = policy.missing_severity
    elif record.drift_class == DriftClass.UNMANAGED:
        severity = policy.unmanaged_severity
    else:
        severity = severity_for_score(record.score, policy)
    return _apply_floors(severity, record.diffs, policy)


def determine_eligibility(record: DriftRecord, policy: ScoringPolicy) -> Tuple[bool, str]:
    """
    Decide whether a drift may be remediated automatically.

    Returns:
        Tuple of (eligible, reason)
    """
    if record.identity.kind in policy.non_remediable_kinds:
        return False, f"kind {record.identity.kind} is not remediable"
    if record.drift_class == DriftClass.UNMANAGED and not policy.unmanaged_remediable:
        return False, "unmanaged resources are left for manual action"
    blocked = [d.path for d in record.diffs if matches_any(d.path, policy.non_remediable_paths)]
    if blocked:
        return False, f"non-remediable paths changed: {', '.join(blocked)}"
    return True, "eligible"


def calculate_severity_distribution(records: Iterable[DriftRecord]) -> Dict[str, int]:
    """Count records per severity class; unclassified records are skipped."""
    distribution = {severity.value: 0 for severity in Severity}
    for record in records:
        if record.severity is not None:
            distribution[record.severity.value] += 1
    return distribution
