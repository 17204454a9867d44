"""
Drift Store Tests
-----------------
Tests for conditional (versioned) updates, the one-active-record-per-resource
rule, transactional events and audit entries, error states and resource
archival.
"""

from datetime import timedelta

import pytest
from sqlalchemy import DateTime
from sqlmodel import SQLModel

from driftwatch.core.drift.comparator import compare_raw
from driftwatch.core.drift.types import (
    AuditEntry, DriftEvent, DriftStatus, EventType, RemediationAction,
    RemediationDecision, utcnow
)
from driftwatch.core.errors import RecordNotFound, StaleWriteError
from driftwatch.services.store import RecordChange
from tests.fakes import WEB, deployment, live_deployment

pytestmark = pytest.mark.asyncio


def replica_drift():
    return compare_raw(deployment(replicas=3), live_deployment(replicas=5), WEB)


async def create(store, record=None):
    record = record or replica_drift()
    return await store.create_record(RecordChange(
        record=record,
        events=[DriftEvent.for_record(record, EventType.DETECTED)],
        audit=[AuditEntry(drift_id=record.id, resource_key=record.identity.key, to_state="open")],
    ))


# ========== TESTS FOR CONDITIONAL UPDATES ========== #

async def test_create_and_read_back(store, bus):
    # Act
    created = await create(store)

    # Assert
    stored = await store.get_record(created.id)
    assert stored.version == 1
    assert stored.diffs == created.diffs
    assert (await store.get_active(WEB.key)).id == created.id
    events = await bus.read()
    assert [e.event_type for e in events] == [EventType.DETECTED]
    assert events[0].offset == 1
    assert len(await store.list_audit(drift_id=created.id)) == 1


async def test_timestamps_are_plain_utc_datetimes(store):
    """Timestamp columns are declared without timezone so naive UTC values are accepted"""
    # Arrange
    timestamp_columns = [
        column
        for table in SQLModel.metadata.sorted_tables
        for column in table.columns
        if column.name.endswith("_at") or column.name in ("timestamp", "absent_since")
    ]

    # Act
    created = await create(store)
    stored = await store.get_record(created.id)

    # Assert
    assert timestamp_columns
    assert all(type(column.type) is DateTime and not column.type.timezone for column in timestamp_columns)
    assert stored.detected_at == created.detected_at
    assert stored.detected_at.tzinfo is None


async def test_stale_write_is_rejected(store):
    """A writer holding an old version never overwrites a newer update"""
    # Arrange
    created = await create(store)
    first = created.model_copy(update={"occurrence_count": 2})
    second = created.model_copy(update={"occurrence_count": 3})

    # Act
    await store.update_record(RecordChange(record=first), expected_version=1)
    with pytest.raises(StaleWriteError):
        await store.update_record(RecordChange(record=second), expected_version=1)

    # Assert
    stored = await store.get_record(created.id)
    assert stored.occurrence_count == 2
    assert stored.version == 2


async def test_rejected_write_publishes_nothing(store, bus):
    created = await create(store)
    await store.update_record(RecordChange(record=created), expected_version=1)

    with pytest.raises(StaleWriteError):
        await store.update_record(
            RecordChange(record=created, events=[DriftEvent.for_record(created, EventType.UPDATED)]),
            expected_version=1,
        )

    assert [e.event_type for e in await bus.read()] == [EventType.DETECTED]


async def test_modify_retries_on_stale_write(store, monkeypatch):
    # Arrange
    created = await create(store)
    real_update = store.update_record
    attempts = []

    async def flaky_update(change, expected_version):
        attempts.append(expected_version)
        if len(attempts) == 1:
            raise StaleWriteError(str(change.record.id), expected_version)
        return await real_update(change, expected_version)

    monkeypatch.setattr(store, "update_record", flaky_update)

    # Act
    updated = await store.modify(
        created.id,
        lambda current: RecordChange(
            record=current.model_copy(update={"occurrence_count": current.occurrence_count + 1})
        ),
    )

    # Assert
    assert attempts == [1, 1]
    assert updated.occurrence_count == 2
    assert updated.version == 2


async def test_modify_returns_current_when_mutation_declines(store):
    created = await create(store)

    unchanged = await store.modify(created.id, lambda current: None)

    assert unchanged.version == 1


async def test_one_active_record_per_resource(store):
    await create(store)

    with pytest.raises(StaleWriteError):
        await create(store)


async def test_resolved_record_frees_the_resource(store):
    # Arrange
    first = await create(store)
    resolved = first.model_copy(update={"status": DriftStatus.RESOLVED, "resolved_at": utcnow()})
    await store.update_record(RecordChange(record=resolved), expected_version=first.version)

    # Act
    second = await create(store)

    # Assert
    assert second.id != first.id
    assert (await store.get_active(WEB.key)).id == second.id
    history = await store.history(WEB.key)
    assert {r.id for r in history} == {first.id, second.id}


async def test_missing_record_raises(store):
    with pytest.raises(RecordNotFound):
        await store.get_record(replica_drift().id)


# ========== TESTS FOR DECISIONS AND QUERIES ========== #

async def test_decisions_are_upserted(store):
    # Arrange
    created = await create(store)
    decision = RemediationDecision(drift_id=created.id, action=RemediationAction.AUTO_APPLY)
    await store.update_record(RecordChange(record=created, decisions=[decision]), expected_version=1)

    # Act
    completed = decision.model_copy(update={"attempts": 2})
    await store.update_record(RecordChange(record=created, decisions=[completed]), expected_version=2)

    # Assert
    decisions = await store.list_decisions(created.id)
    assert len(decisions) == 1
    assert decisions[0].attempts == 2
    assert (await store.get_decision(decision.id)).id == decision.id


async def test_list_active_filters(store):
    created = await create(store)

    assert [r.id for r in await store.list_active(environment="production")] == [created.id]
    assert await store.list_active(environment="staging") == []
    assert [r.id for r in await store.list_active(service="web")] == [created.id]
    assert [r.id for r in await store.list_active(service="Deployment/web")] == [created.id]
    assert await store.list_active(service="Service/web") == []


# ========== TESTS FOR RESOURCES AND RETENTION ========== #

async def test_error_state_set_and_cleared(store):
    await store.set_error_state(WEB, "No normalization rule for kind 'Widget'")

    errors = await store.list_error_states()
    assert [row.key for row in errors] == [WEB.key]
    assert errors[0].error_state.startswith("No normalization rule")

    await store.clear_error_state(WEB.key)
    assert await store.list_error_states() == []


async def test_absent_resources_are_archived(store):
    # Arrange
    long_ago = utcnow() - timedelta(days=10)
    await store.observe_resource(WEB, desired_present=True, live_present=True, now=long_ago)
    await store.observe_resource(WEB, desired_present=False, live_present=False, now=long_ago)

    # Act
    archived = await store.archive_absent_resources(utcnow() - timedelta(days=7))

    # Assert
    assert archived == 1
    assert (await store.get_resource(WEB.key)).archived

    await store.observe_resource(WEB, desired_present=True, live_present=False)
    resource = await store.get_resource(WEB.key)
    assert not resource.archived
    assert resource.absent_since is None


async def test_purge_removes_only_old_terminal_records(store):
    # Arrange
    first = await create(store)
    old = utcnow() - timedelta(days=100)
    resolved = first.model_copy(update={"status": DriftStatus.RESOLVED, "last_seen_at": old})
    await store.update_record(RecordChange(record=resolved), expected_version=first.version)
    active = await create(store)

    # Act
    deleted = await store.purge_records(utcnow() - timedelta(days=90))

    # Assert
    assert deleted == 1
    assert [r.id for r in await store.history(WEB.key)] == [active.id]
