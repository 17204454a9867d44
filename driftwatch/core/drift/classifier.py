"""
Classifier / Risk Assessor
--------------------------
Maps a drift record to a severity class and a remediation eligibility
flag. The scoring strategy is a capability with two variants selected by
configuration: a deterministic rule table (default) and a model-backed
scorer that always falls back to the rule table on timeout or failure.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel

from driftwatch.core.drift.severity import (
    ScoringPolicy, calculate_severity, determine_eligibility
)
from driftwatch.core.drift.types import DriftRecord, Severity
from driftwatch.core.errors import ScorerError, ScorerTimeout
from driftwatch.core.observability import (
    DEGRADED_SCORING_COUNTER, DRIFT_CLASSIFIED_COUNTER, HealthMonitor
)

logger = logging.getLogger(__name__)


class Assessment(BaseModel):
    """Result of classifying one drift record."""

    severity: Severity
    eligible: bool
    confidence: float = 1.0
    degraded: bool = False
    strategy: str = "rule"
    rationale: str = ""


class Scorer(Protocol):
    """Narrow contract of the optional external scorer."""

    async def score(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...


class ScoringStrategy(ABC):
    """Capability interface for drift classification strategies."""

    name: str = "abstract"

    @abstractmethod
    async def assess(self, record: DriftRecord) -> Assessment:
        raise NotImplementedError


class RuleBasedStrategy(ScoringStrategy):
    """Deterministic rule table; the engine is correct with this alone."""

    name = "rule"

    def __init__(self, policy: ScoringPolicy):
        self.policy = policy

    async def assess(self, record: DriftRecord) -> Assessment:
        return self.evaluate(record)

    def evaluate(self, record: DriftRecord) -> Assessment:
        severity = calculate_severity(record, self.policy)
        eligible, reason = determine_eligibility(record, self.policy)
        return Assessment(
            severity=severity,
            eligible=eligible,
            confidence=1.0,
            strategy=self.name,
            rationale=reason,
        )


class ModelBasedStrategy(ScoringStrategy):
    """
    External scorer with a bounded timeout.

    Eligibility always comes from the rule table; the model only proposes a
    severity. Any failure degrades to the rule-based result.
    """

    name = "model"

    def __init__(
        self,
        scorer: Scorer,
        fallback: RuleBasedStrategy,
        timeout_seconds: float = 2.0,
        min_confidence: float = 0.5,
        health: Optional[HealthMonitor] = None,
    ):
        self.scorer = scorer
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.min_confidence = min_confidence
        self.health = health

    @staticmethod
    def build_request(record: DriftRecord) -> Dict[str, Any]:
        identity = record.identity
        return {
            "diff_summary": record.diff_summary(),
            "resource_metadata": {
                "environment": identity.environment,
                "namespace": identity.namespace,
                "kind": identity.kind,
                "name": identity.name,
            },
        }

    async def assess(self, record: DriftRecord) -> Assessment:
        baseline = self.fallback.evaluate(record)

        try:
            response = await asyncio.wait_for(
                self.scorer.score(self.build_request(record)),
                timeout=self.timeout_seconds,
            )
            severity = Severity.parse(response["severity"])
            confidence = float(response.get("confidence", 0.0))
        except (asyncio.TimeoutError, ScorerTimeout):
            return self._degraded(baseline, record, "timeout")
        except (ScorerError, KeyError, ValueError, TypeError) as e:
            return self._degraded(baseline, record, f"invalid response: {e}")
        except Exception as e:
            return self._degraded(baseline, record, f"scorer error: {e}")

        if self.health:
            self.health.mark_ok("scorer")

        if confidence < self.min_confidence:
            return baseline.model_copy(update={
                "rationale": f"model confidence {confidence:.2f} below "
                             f"{self.min_confidence:.2f}; {baseline.rationale}",
            })

        return Assessment(
            severity=severity,
            eligible=baseline.eligible,
            confidence=confidence,
            strategy=self.name,
            rationale=baseline.rationale,
        )

    def _degraded(self, baseline: Assessment, record: DriftRecord, reason: str) -> Assessment:
        logger.warning(
            f"Degraded scoring for {record.identity.key} ({reason}); "
            f"using rule-based severity {baseline.severity.value}"
        )
        DEGRADED_SCORING_COUNTER.labels(reason=reason.split(":")[0]).inc()
        if self.health:
            self.health.mark_degraded("scorer", reason)
        return baseline.model_copy(update={"degraded": True, "rationale": f"fallback ({reason})"})


class Classifier:
    """Front door for classification; the strategy is chosen at construction."""

    def __init__(self, strategy: ScoringStrategy):
        self.strategy = strategy

    async def classify(self, record: DriftRecord) -> Assessment:
        assessment = await self.strategy.assess(record)
        DRIFT_CLASSIFIED_COUNTER.labels(
            severity=assessment.severity.value,
            strategy=assessment.strategy,
        ).inc()
        return assessment


def build_classifier(
    settings: Any,
    policy: ScoringPolicy,
    scorer: Optional[Scorer] = None,
    health: Optional[HealthMonitor] = None,
) -> Classifier:
    """
    Build the classifier selected by ``CLASSIFIER_STRATEGY``.

    Args:
        settings: Application settings
        policy: Scoring policy for the rule table
        scorer: External scorer, required for the model strategy
        health: Health monitor notified on degraded scoring

    Returns:
        Classifier wrapping the configured strategy
    """
    rules = RuleBasedStrategy(policy)
    if settings.CLASSIFIER_STRATEGY == "model":
        if scorer is None:
            logger.warning("Model classifier requested without a scorer; using rule table")
            return Classifier(rules)
        return Classifier(ModelBasedStrategy(
            scorer,
            rules,
            timeout_seconds=settings.SCORER_TIMEOUT_SECONDS,
            min_confidence=settings.SCORER_MIN_CONFIDENCE,
            health=health,
        ))
    return Classifier(rules)
