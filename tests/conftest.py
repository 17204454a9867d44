"""
Test Fixtures and Configuration
------------------------------
This module contains fixtures and configuration for pytest testing: a
fresh SQLite database file per test and the engine components wired to
in-memory collaborators.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from driftwatch.core.database import build_engine, build_session_factory, create_db_and_tables
from driftwatch.core.drift.classifier import Classifier, RuleBasedStrategy
from driftwatch.core.drift.correlator import Correlator
from driftwatch.core.drift.severity import ScoringPolicy
from driftwatch.core.observability import HealthMonitor
from driftwatch.services.event_bus import EventBus
from driftwatch.services.pipeline import DriftEngine
from driftwatch.services.remediation import CONSUMER_NAME, RemediationEngine, RemediationPolicy
from driftwatch.services.resolver import DesiredStateResolver
from driftwatch.services.store import DriftStore
from driftwatch.services.watcher import LiveStateWatcher
from tests.fakes import FAST_RETRY, FakeConfigSource, FakeResourceProvider


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[sessionmaker, None]:
    """Fresh SQLite database file for each test"""
    # A file database gives every concurrent session its own connection
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'driftwatch.db'}")
    await create_db_and_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def health() -> HealthMonitor:
    return HealthMonitor()


@pytest.fixture
def policy() -> ScoringPolicy:
    return ScoringPolicy()


@pytest.fixture
def bus(session_factory, health) -> EventBus:
    return EventBus(session_factory, poll_interval=0.01, retry_base_delay=0.001, retry_max_delay=0.01,
                    max_delivery_attempts=3, health=health)


@pytest.fixture
def store(session_factory, bus) -> DriftStore:
    return DriftStore(session_factory, bus)


@pytest.fixture
def source() -> FakeConfigSource:
    return FakeConfigSource()


@pytest.fixture
def provider() -> FakeResourceProvider:
    return FakeResourceProvider()


@pytest.fixture
def resolver(source, store, health) -> DesiredStateResolver:
    return DesiredStateResolver(source, store, health, **FAST_RETRY)


@pytest.fixture
def watcher(provider, health) -> LiveStateWatcher:
    return LiveStateWatcher(provider, ["production", "staging"], resync_interval_seconds=300,
                            health=health, **FAST_RETRY)


@pytest.fixture
def classifier(policy) -> Classifier:
    return Classifier(RuleBasedStrategy(policy))


@pytest.fixture
def remediation_policy() -> RemediationPolicy:
    return RemediationPolicy(
        retry_delay_seconds=0,
        lock_timeout_seconds=5,
        conflict_delay_seconds=0.01,
    )


@pytest.fixture
def remediation(store, provider, resolver, watcher, remediation_policy, policy, health) -> RemediationEngine:
    return RemediationEngine(store, provider, resolver, watcher, remediation_policy, policy, health=health)


@pytest.fixture
def engine(store, resolver, watcher, classifier, policy, health, remediation) -> DriftEngine:
    return DriftEngine(store, resolver, watcher, classifier, Correlator(), policy,
                       worker_count=2, health=health, remediation=remediation)


@pytest.fixture
def remediation_consumer(bus, remediation):
    """The remediation engine subscribed to the event log"""
    return bus.subscribe(CONSUMER_NAME, remediation.handle_event)

