"""
Event Bus Tests
---------------
Tests for the durable event log: ordered offsets, consumer offset commits,
at-least-once delivery with idempotency keys, replay after restart and
consumer failure handling.
"""

import asyncio
from datetime import timedelta

import pytest

from driftwatch.core.drift.comparator import compare_raw
from driftwatch.core.drift.types import DriftEvent, EventType, utcnow
from driftwatch.services.event_bus import EventBus
from tests.fakes import WEB, deployment, live_deployment

pytestmark = pytest.mark.asyncio

# ========== SAMPLE DATA FOR TESTING ========== #

RECORD = compare_raw(deployment(replicas=3), live_deployment(replicas=5), WEB)


def lifecycle_events():
    return [
        DriftEvent.for_record(RECORD, EventType.DETECTED),
        DriftEvent.for_record(RECORD, EventType.CLASSIFIED, degraded=False),
        DriftEvent.for_record(RECORD, EventType.RESOLVED),
    ]


class Recorder:
    """Event handler remembering what it saw"""

    def __init__(self, fail_on=None):
        self.seen = []
        self.fail_on = fail_on
        self.calls = 0

    async def __call__(self, event):
        self.calls += 1
        if self.fail_on is not None and event.event_type == self.fail_on:
            raise RuntimeError(f"cannot handle {event.event_type.value}")
        self.seen.append(event.event_type)


# ========== TESTS FOR PUBLISHING AND READING ========== #

async def test_offsets_are_assigned_in_order(bus):
    # Act
    published = await bus.publish(lifecycle_events())

    # Assert
    assert [e.offset for e in published] == [1, 2, 3]
    assert await bus.latest_offset() == 3
    events = await bus.read(after=1)
    assert [e.event_type for e in events] == [EventType.CLASSIFIED, EventType.RESOLVED]


async def test_read_filters(bus):
    await bus.publish(lifecycle_events())

    classified = await bus.read(event_type=EventType.CLASSIFIED)
    by_record = await bus.read(drift_id=RECORD.id, limit=2)

    assert [e.offset for e in classified] == [2]
    assert len(by_record) == 2


# ========== TESTS FOR CONSUMERS ========== #

async def test_drain_delivers_and_commits(bus):
    # Arrange
    recorder = Recorder()
    subscription = bus.subscribe("audit-sink", recorder)
    await bus.publish(lifecycle_events())

    # Act
    handled = await subscription.drain()

    # Assert
    assert handled == 3
    assert recorder.seen == [EventType.DETECTED, EventType.CLASSIFIED, EventType.RESOLVED]
    assert await bus.committed_offset("audit-sink") == 3
    assert await subscription.drain() == 0


async def test_replay_skips_already_processed_events(bus):
    """At-least-once delivery: a rewind does not re-run handled events"""
    # Arrange
    recorder = Recorder()
    subscription = bus.subscribe("audit-sink", recorder)
    await bus.publish(lifecycle_events())
    await subscription.drain()

    # Act
    await bus.replay("audit-sink", from_offset=0)
    handled = await subscription.drain()

    # Assert
    assert handled == 0
    assert subscription.skipped_duplicates == 3
    assert len(recorder.seen) == 3
    assert await bus.committed_offset("audit-sink") == 3


async def test_replay_with_forgotten_keys_redelivers(bus):
    recorder = Recorder()
    subscription = bus.subscribe("audit-sink", recorder)
    await bus.publish(lifecycle_events())
    await subscription.drain()

    await bus.replay("audit-sink", from_offset=1, forget_processed=True)
    handled = await subscription.drain()

    assert handled == 2
    assert recorder.seen[3:] == [EventType.CLASSIFIED, EventType.RESOLVED]


async def test_committed_offset_survives_restart(session_factory):
    """A new bus over the same storage resumes where the consumer left off"""
    # Arrange
    first = EventBus(session_factory)
    await first.publish(lifecycle_events()[:2])
    await first.subscribe("audit-sink", Recorder()).drain()
    await first.publish(lifecycle_events()[2:])

    # Act
    recorder = Recorder()
    second = EventBus(session_factory)
    await second.subscribe("audit-sink", recorder).drain()

    # Assert
    assert recorder.seen == [EventType.RESOLVED]


async def test_failing_handler_degrades_consumer_and_moves_on(bus, health):
    # Arrange
    recorder = Recorder(fail_on=EventType.CLASSIFIED)
    subscription = bus.subscribe("flaky", recorder)
    await bus.publish(lifecycle_events())

    # Act
    await subscription.drain()

    # Assert
    assert recorder.seen == [EventType.DETECTED, EventType.RESOLVED]
    assert recorder.calls == 2 + bus.max_delivery_attempts
    assert health.status_of("consumer:flaky") == "degraded"
    assert await bus.committed_offset("flaky") == 3


async def test_duplicate_subscription_is_rejected(bus):
    bus.subscribe("audit-sink", Recorder())

    with pytest.raises(ValueError):
        bus.subscribe("audit-sink", Recorder())


async def test_running_consumer_is_woken_by_publish(bus):
    # Arrange
    recorder = Recorder()
    bus.subscribe("audit-sink", recorder)
    bus.start()

    # Act
    await bus.publish(lifecycle_events())
    for _ in range(100):
        if len(recorder.seen) == 3:
            break
        await asyncio.sleep(0.01)
    await bus.stop()

    # Assert
    assert recorder.seen == [EventType.DETECTED, EventType.CLASSIFIED, EventType.RESOLVED]


# ========== TESTS FOR COMPACTION ========== #

async def test_compaction_keeps_unread_events(bus):
    # Arrange
    bus.subscribe("slow", Recorder())
    fast = bus.subscribe("fast", Recorder())
    await bus.publish(lifecycle_events())
    await fast.drain()
    await bus.seek("slow", 1)

    # Act
    removed = await bus.compact(utcnow() + timedelta(seconds=1))

    # Assert
    assert removed == 0
    assert await bus.latest_offset() == 3

    await bus.seek("slow", 3)
    removed = await bus.compact(utcnow() + timedelta(seconds=1))
    assert removed == 2
    assert [e.offset for e in await bus.read()] == [3]
