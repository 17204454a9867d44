"""
Drift Pipeline Tests
--------------------
End-to-end tests for the comparison pipeline: detection of changed,
missing and unmanaged resources, de-duplication of repeated observations,
resolution, expiry, per-resource error states and degraded classification.
"""

import pytest

from driftwatch.core.drift.classifier import Classifier, ModelBasedStrategy, RuleBasedStrategy
from driftwatch.core.drift.types import (
    DiffType, DriftClass, DriftStatus, EventType, RemediationState,
    ResourceIdentity, Severity
)
from driftwatch.services.pipeline import DriftEngine
from tests.fakes import WEB, FakeScorer, deployment, live_deployment, sync_sources

pytestmark = pytest.mark.asyncio

WIDGET = ResourceIdentity(environment="production", namespace="default", kind="Widget", name="gizmo")


async def observe(resolver, watcher, source, provider, desired=None, live=None, identity=WEB):
    if desired is not None:
        source.declare(identity, desired, "r1")
    if live is not None:
        provider.put(identity, live)
    await sync_sources(resolver, watcher)


async def event_types(bus):
    return [e.event_type for e in await bus.read(limit=1000)]


# ========== TESTS FOR DETECTION ========== #

async def test_replica_drift_is_detected(engine, resolver, watcher, source, provider, store, bus):
    """Desired replicas 3 against live replicas 5 gives one medium drift"""
    # Arrange
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))

    # Act
    record = await engine.process(WEB)

    # Assert
    assert record.drift_class == DriftClass.MODIFIED
    assert [(d.path, d.diff_type) for d in record.diffs] == [("spec.replicas", DiffType.CHANGED)]
    assert record.diffs[0].desired_value == 3
    assert record.diffs[0].live_value == 5
    assert record.severity == Severity.MEDIUM
    assert record.eligible
    assert record.desired_revision == "r1"
    assert (await store.get_active(WEB.key)).id == record.id
    assert await event_types(bus) == [EventType.DETECTED, EventType.CLASSIFIED]
    resource = await store.get_resource(WEB.key)
    assert resource.desired_present and resource.live_present


async def test_missing_resource_is_detected(engine, resolver, watcher, source, provider):
    await observe(resolver, watcher, source, provider, desired=deployment())

    record = await engine.process(WEB)

    assert record.drift_class == DriftClass.MISSING
    assert record.severity == Severity.HIGH
    assert record.eligible


async def test_unmanaged_resource_is_detected(engine, resolver, watcher, source, provider):
    await observe(resolver, watcher, source, provider, live=live_deployment())

    record = await engine.process(WEB)

    assert record.drift_class == DriftClass.UNMANAGED
    assert record.severity == Severity.LOW
    assert not record.eligible


async def test_equal_states_produce_no_record(engine, resolver, watcher, source, provider, store, bus):
    await observe(resolver, watcher, source, provider, deployment(), live_deployment())

    assert await engine.process(WEB) is None
    assert await store.get_active(WEB.key) is None
    assert await bus.read() == []


# ========== TESTS FOR CORRELATION OVER TIME ========== #

async def test_repeated_observation_updates_the_same_record(engine, resolver, watcher, source, provider, bus):
    """An unchanged drift seen again bumps the count without a new notification"""
    # Arrange
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))
    first = await engine.process(WEB)

    # Act
    second = await engine.process(WEB)

    # Assert
    assert second.id == first.id
    assert second.occurrence_count == 2
    assert await event_types(bus) == [EventType.DETECTED, EventType.CLASSIFIED]


async def test_changed_diff_is_reclassified(engine, resolver, watcher, source, provider, bus):
    # Arrange
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))
    first = await engine.process(WEB)

    # Act
    watcher.apply(WEB, live_deployment(replicas=7, image="nginx:1.26"))
    second = await engine.process(WEB)

    # Assert
    assert second.id == first.id
    assert set(second.changed_paths) == {"spec.replicas", "spec.template.spec.containers[web].image"}
    assert not second.needs_classification
    assert await event_types(bus) == [
        EventType.DETECTED, EventType.CLASSIFIED, EventType.UPDATED, EventType.CLASSIFIED,
    ]


async def test_material_change_reopens_remediation_evaluation(engine, resolver, watcher, source, provider,
                                                              remediation, store):
    # Arrange
    await observe(resolver, watcher, source, provider, desired=deployment())
    record = await engine.process(WEB)
    await remediation.evaluate(record.id)
    assert (await store.get_record(record.id)).remediation_state == RemediationState.AWAITING_APPROVAL

    # Act
    watcher.apply(WEB, live_deployment(replicas=5))
    revised = await engine.process(WEB)

    # Assert
    assert revised.id == record.id
    assert revised.drift_class == DriftClass.MODIFIED
    assert revised.remediation_state == RemediationState.OPEN


async def test_convergence_resolves_the_record(engine, resolver, watcher, source, provider, store, bus):
    # Arrange
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))
    record = await engine.process(WEB)

    # Act
    watcher.apply(WEB, live_deployment(replicas=3))
    resolved = await engine.process(WEB)

    # Assert
    assert resolved.id == record.id
    assert resolved.status == DriftStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert await store.get_active(WEB.key) is None
    assert (await event_types(bus))[-1] == EventType.RESOLVED


async def test_resource_removed_everywhere_expires(engine, resolver, watcher, source, provider, store, bus):
    # Arrange
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))
    record = await engine.process(WEB)

    # Act
    source.remove(WEB)
    await resolver.handle_change(WEB, "r2")
    watcher.apply(WEB, None)
    expired = await engine.process(WEB)

    # Assert
    assert expired.id == record.id
    assert expired.status == DriftStatus.EXPIRED
    assert (await event_types(bus))[-1] == EventType.EXPIRED
    resource = await store.get_resource(WEB.key)
    assert resource.absent_since is not None


# ========== TESTS FOR SKIPPED COMPARISONS ========== #

async def test_nothing_is_compared_before_initial_sync(engine, source, provider):
    source.declare(WEB, deployment(replicas=3))
    provider.put(WEB, live_deployment(replicas=5))

    assert await engine.process(WEB) is None


async def test_stale_live_state_skips_comparison(engine, resolver, watcher, source, provider, store, monkeypatch):
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))
    monkeypatch.setattr(watcher, "is_stale", lambda now=None: True)

    assert await engine.process(WEB) is None
    assert await store.get_active(WEB.key) is None


async def test_paused_desired_state_skips_comparison(engine, resolver, watcher, source, provider, store):
    # Arrange
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))
    source.unavailable = True
    await resolver.handle_change(WEB, "r2")

    # Act / Assert
    assert resolver.get(WEB).paused
    assert await engine.process(WEB) is None
    assert await store.get_active(WEB.key) is None


async def test_unsupported_kind_is_an_error_not_a_clean_result(engine, resolver, watcher, source, provider, store):
    # Arrange
    widget = {"kind": "Widget", "metadata": {"name": "gizmo"}, "spec": {"size": 1}}
    await observe(resolver, watcher, source, provider, widget, widget, identity=WIDGET)

    # Act
    record = await engine.process(WIDGET)

    # Assert
    assert record is None
    errors = await store.list_error_states()
    assert [row.key for row in errors] == [WIDGET.key]
    assert "Widget" in errors[0].error_state


# ========== TESTS FOR DEGRADED CLASSIFICATION ========== #

async def test_scorer_timeout_falls_back_to_rules(store, resolver, watcher, source, provider, policy, health, bus):
    """A slow scorer never blocks classification; the event says degraded"""
    # Arrange
    classifier = Classifier(ModelBasedStrategy(
        FakeScorer(delay=1.0), RuleBasedStrategy(policy), timeout_seconds=0.05, health=health,
    ))
    engine = DriftEngine(store, resolver, watcher, classifier, policy=policy, health=health)
    await observe(resolver, watcher, source, provider, deployment(replicas=3), live_deployment(replicas=5))

    # Act
    record = await engine.process(WEB)

    # Assert
    assert record.severity == Severity.MEDIUM
    assert record.degraded
    classified = await bus.read(event_type=EventType.CLASSIFIED)
    assert len(classified) == 1
    assert classified[0].payload["degraded"] is True
    assert classified[0].payload["rationale"].startswith("fallback")
    assert health.status_of("scorer") == "degraded"


# ========== TESTS FOR THE WORKER POOL ========== #

async def test_workers_process_signals_after_sync(engine, resolver, watcher, source, provider, store):
    # Arrange
    api = WEB.model_copy(update={"name": "api"})
    source.declare(WEB, deployment(replicas=3))
    provider.put(WEB, live_deployment(replicas=5))
    source.declare(api, deployment("api"))
    provider.put(api, live_deployment("api"))
    engine.start()

    # Act
    await sync_sources(resolver, watcher)
    await engine.drain()
    await engine.stop()

    # Assert
    active = await store.list_active()
    assert [r.identity.key for r in active] == [WEB.key]
    assert engine.backlog == 0


async def test_detection_through_remediation(engine, resolver, watcher, source, provider, store,
                                             remediation, remediation_consumer):
    """Detected drift flows through the event log into a converged remediation"""
    # Arrange
    source.declare(WEB, deployment(replicas=3))
    provider.put(WEB, live_deployment(replicas=5))
    engine.start()

    # Act
    await sync_sources(resolver, watcher)
    await engine.drain()
    await remediation_consumer.drain()
    await remediation.settle()
    await engine.drain()
    await engine.stop()

    # Assert
    history = await store.history(WEB.key)
    assert len(history) == 1
    assert history[0].status == DriftStatus.RESOLVED
    assert history[0].remediation_state == RemediationState.RESOLVED
    assert await store.get_active(WEB.key) is None
