"""
Drift Comparator
----------------
Structural comparison of normalized desired and live state. Produces a
drift record with a field-level diff list and a deterministic score, or
None when the two sides are equal under normalization.
"""

import logging
from numbers import Number
from typing import Any, Dict, List, Optional

from driftwatch.core.drift.normalizer import NormalizationRegistry, normalize
from driftwatch.core.drift.severity import ScoringPolicy
from driftwatch.core.drift.types import (
    DiffType, DriftClass, DriftRecord, FieldDiff, NormalizedState, ResourceIdentity
)

logger = logging.getLogger(__name__)

WHOLE_RESOURCE_PATH = "*"


def values_equal(left: Any, right: Any) -> bool:
    """Type-aware equality: True never equals 1, 3 equals 3.0."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, Number) and isinstance(right, Number):
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    return type(left) is type(right) and left == right


def diff_states(
    desired: NormalizedState,
    live: NormalizedState,
    policy: ScoringPolicy
) -> List[FieldDiff]:
    """
    Compute the leaf-level differences between two normalized states.

    Args:
        desired: Normalized declared state
        live: Normalized observed state
        policy: Scoring policy supplying per-path weights

    Returns:
        Diffs sorted by path
    """
    diffs: List[FieldDiff] = []

    for path in sorted(desired.paths | live.paths):
        in_desired = path in desired.leaves
        in_live = path in live.leaves

        if in_desired and in_live:
            if values_equal(desired.leaves[path], live.leaves[path]):
                continue
            diff_type = DiffType.CHANGED
        elif in_desired:
            diff_type = DiffType.REMOVED
        else:
            diff_type = DiffType.ADDED

        diffs.append(FieldDiff(
            path=path,
            diff_type=diff_type,
            desired_value=desired.leaves.get(path),
            live_value=live.leaves.get(path),
            weight=policy.weight_for(path),
        ))

    return diffs


def compare(
    desired: Optional[NormalizedState],
    live: Optional[NormalizedState],
    identity: ResourceIdentity,
    policy: Optional[ScoringPolicy] = None,
) -> Optional[DriftRecord]:
    """
    Compare desired and live state for one resource.

    A side that is entirely absent is a drift class, not an error: declared
    but not running is ``missing``, running but not declared is ``unmanaged``.

    Args:
        desired: Normalized declared state, or None when not declared
        live: Normalized observed state, or None when not running
        identity: Identity of the compared resource
        policy: Scoring policy (defaults to built-in weights)

    Returns:
        A new open DriftRecord, or None when the states are equal
    """
    policy = policy or ScoringPolicy()

    if desired is None and live is None:
        return None

    if live is None:
        return DriftRecord(
            identity=identity,
            drift_class=DriftClass.MISSING,
            diffs=[FieldDiff(
                path=WHOLE_RESOURCE_PATH,
                diff_type=DiffType.REMOVED,
                desired_value=f"Resource with {len(desired.leaves)} fields",
                live_value=None,
            )],
            score=policy.missing_score,
            desired_revision=desired.revision,
            desired_fingerprint=desired.fingerprint,
        )

    if desired is None:
        return DriftRecord(
            identity=identity,
            drift_class=DriftClass.UNMANAGED,
            diffs=[FieldDiff(
                path=WHOLE_RESOURCE_PATH,
                diff_type=DiffType.ADDED,
                desired_value=None,
                live_value=f"Resource with {len(live.leaves)} fields",
            )],
            score=policy.unmanaged_score,
            live_fingerprint=live.fingerprint,
        )

    diffs = diff_states(desired, live, policy)
    if not diffs:
        return None

    return DriftRecord(
        identity=identity,
        drift_class=DriftClass.MODIFIED,
        diffs=diffs,
        score=policy.score(d.weight for d in diffs),
        desired_revision=desired.revision,
        desired_fingerprint=desired.fingerprint,
        live_fingerprint=live.fingerprint,
    )


def compare_raw(
    desired_raw: Optional[Dict[str, Any]],
    live_raw: Optional[Dict[str, Any]],
    identity: ResourceIdentity,
    registry: Optional[NormalizationRegistry] = None,
    policy: Optional[ScoringPolicy] = None,
    revision: Optional[str] = None,
) -> Optional[DriftRecord]:
    """
    Normalize both raw sides and compare them.

    Raises:
        UnsupportedKind: The resource kind has no normalization rule
        DataIntegrityError: A side is not a mapping
    """
    desired = (
        normalize(desired_raw, identity.kind, registry, revision=revision)
        if desired_raw is not None else None
    )
    live = normalize(live_raw, identity.kind, registry) if live_raw is not None else None
    return compare(desired, live, identity, policy)
