"""
Live-State Watcher Tests
------------------------
Tests for change-feed ingestion, full resync (including deletion
detection), missed resyncs and the stale-state threshold.
"""

import asyncio
from datetime import timedelta

import pytest

from driftwatch.core.drift.types import utcnow
from driftwatch.services.watcher import FEED_COMPONENT, LiveStateWatcher
from tests.fakes import FAST_RETRY, WEB, live_deployment

pytestmark = pytest.mark.asyncio

STAGING_WEB = WEB.model_copy(update={"environment": "staging"})


# ========== TESTS FOR RESYNC ========== #

async def test_resync_populates_every_environment(watcher, provider, health):
    # Arrange
    provider.put(WEB, live_deployment())
    provider.put(STAGING_WEB, live_deployment(replicas=1))

    # Act
    observed = await watcher.resync()

    # Assert
    assert observed == 2
    assert watcher.ready
    assert not watcher.is_stale()
    assert watcher.get(STAGING_WEB).state["spec"]["replicas"] == 1
    assert health.is_ok("resource_provider")


async def test_resync_detects_deleted_resources(watcher, provider):
    """A resource no longer listed by the provider is recorded as deleted"""
    # Arrange
    provider.put(WEB, live_deployment())
    await watcher.resync()
    changed = []
    watcher.add_listener(changed.append)

    # Act
    provider.delete(WEB)
    await watcher.resync()

    # Assert
    entry = watcher.get(WEB)
    assert entry is not None
    assert not entry.present
    assert changed == [WEB]


async def test_unchanged_observation_does_not_notify(watcher):
    changed = []
    watcher.add_listener(changed.append)

    assert watcher.apply(WEB, live_deployment())
    assert not watcher.apply(WEB, live_deployment())
    assert changed == [WEB]


async def test_resync_listeners_run_after_resync(watcher):
    calls = []
    watcher.add_resync_listener(lambda: calls.append(True))

    await watcher.resync()

    assert calls == [True]


# ========== TESTS FOR MISSED RESYNCS AND STALENESS ========== #

async def test_missed_resync_marks_provider_degraded(watcher, provider, health):
    # Arrange
    await watcher.resync()
    provider.unavailable = True

    # Act
    succeeded = await watcher.resync_job.run_once()

    # Assert
    assert not succeeded
    assert watcher.missed_resyncs == 1
    assert health.status_of("resource_provider") == "degraded"
    assert watcher.resync_job.stats["failed_runs"] == 1

    provider.unavailable = False
    assert await watcher.resync_job.run_once()
    assert watcher.missed_resyncs == 0
    assert health.is_ok("resource_provider")


async def test_stale_after_threshold(provider, health):
    # Arrange
    watcher = LiveStateWatcher(provider, ["production"], resync_interval_seconds=60,
                               stale_factor=2.0, health=health, **FAST_RETRY)

    # Act / Assert
    assert watcher.is_stale()
    await watcher.resync()
    assert not watcher.is_stale()
    assert not watcher.is_stale(now=utcnow() + timedelta(seconds=100))
    assert watcher.is_stale(now=utcnow() + timedelta(seconds=130))


async def test_refresh_fetches_single_resource(watcher, provider):
    provider.put(WEB, live_deployment(replicas=2))

    state = await watcher.refresh(WEB)

    assert state["spec"]["replicas"] == 2
    assert watcher.get(WEB).present


# ========== TESTS FOR THE CHANGE FEED ========== #

async def test_change_feed_is_ingested(watcher, provider):
    # Arrange
    watcher.start()

    # Act
    provider.emit(WEB, live_deployment(replicas=4))
    for _ in range(100):
        entry = watcher.get(WEB)
        if entry is not None and watcher.ready:
            break
        await asyncio.sleep(0.01)
    await watcher.stop()

    # Assert
    assert watcher.get(WEB).state["spec"]["replicas"] == 4
    assert watcher.ready


async def test_broken_feed_degrades_health_and_reconnects(watcher, provider, health, monkeypatch):
    """A malformed feed event never kills the feed silently"""
    # Arrange
    real_watch = provider.watch
    connections = []

    async def flaky_watch():
        connections.append(True)
        if len(connections) == 1:
            raise KeyError("identity")
        async for item in real_watch():
            yield item

    monkeypatch.setattr(provider, "watch", flaky_watch)

    # Act
    watcher.start()
    for _ in range(100):
        if health.status_of(FEED_COMPONENT) == "degraded":
            break
        await asyncio.sleep(0.01)
    degraded = health.status_of(FEED_COMPONENT)
    provider.emit(WEB, live_deployment(replicas=4))
    for _ in range(100):
        if health.is_ok(FEED_COMPONENT) and watcher.get(WEB) is not None:
            break
        await asyncio.sleep(0.01)
    feed_alive = not watcher._feed_task.done()
    await watcher.stop()

    # Assert
    assert degraded == "degraded"
    assert feed_alive
    assert len(connections) >= 2
    assert health.is_ok(FEED_COMPONENT)
    assert watcher.get(WEB).state["spec"]["replicas"] == 4
