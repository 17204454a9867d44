"""
Drift Detection Core
--------------------
Pure building blocks of the drift engine: normalization of raw resource
state, structural comparison, severity scoring, classification strategies
and correlation of drift records over time and across environments.

Drift is the divergence between the declared (desired) configuration of a
resource and the configuration currently in effect (live).
"""

from driftwatch.core.drift.classifier import Classifier, build_classifier
from driftwatch.core.drift.comparator import compare, compare_raw
from driftwatch.core.drift.correlator import Correlator
from driftwatch.core.drift.normalizer import NormalizationRegistry, normalize
from driftwatch.core.drift.severity import ScoringPolicy, calculate_severity
from driftwatch.core.drift.types import DriftRecord, DriftStatus, ResourceIdentity, Severity

__all__ = [
    'Classifier',
    'build_classifier',
    'compare',
    'compare_raw',
    'Correlator',
    'NormalizationRegistry',
    'normalize',
    'ScoringPolicy',
    'calculate_severity',
    'DriftRecord',
    'DriftStatus',
    'ResourceIdentity',
    'Severity',
]
