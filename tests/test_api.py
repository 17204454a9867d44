"""
Drift API Tests
---------------
Tests for the drift query and operator-action routes, with the engine
runtime replaced by mocks.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from driftwatch.core.drift.comparator import compare_raw
from driftwatch.core.drift.types import (
    AuditEntry, DriftStatus, EventType, RemediationAction, RemediationDecision, Severity
)
from driftwatch.core.errors import InvalidTransition, RecordNotFound, RemediationConflict
from driftwatch.main import app
from driftwatch.services.queries import DriftDetail
from tests.fakes import WEB, deployment, live_deployment

# ========== SAMPLE DATA FOR TESTING ========== #

RECORD = compare_raw(deployment(replicas=3), live_deployment(replicas=5), WEB).model_copy(
    update={"severity": Severity.MEDIUM, "eligible": True}
)


@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.queries.active_drift = AsyncMock(return_value=[RECORD])
    runtime.queries.drift_detail = AsyncMock(return_value=DriftDetail(record=RECORD, decisions=[]))
    runtime.queries.audit_trail = AsyncMock(return_value=[
        AuditEntry(drift_id=RECORD.id, resource_key=WEB.key, to_state="open", message="drift detected"),
    ])
    runtime.queries.events = AsyncMock(return_value=[])
    runtime.remediation.acknowledge = AsyncMock(
        return_value=RECORD.model_copy(update={"status": DriftStatus.ACKNOWLEDGED})
    )
    runtime.remediation.approve = AsyncMock(return_value=RemediationDecision(
        drift_id=RECORD.id, action=RemediationAction.REQUEST_APPROVAL, approved_by="alice",
    ))
    runtime.bus.subscriptions = {"remediation": MagicMock()}
    runtime.bus.replay = AsyncMock()
    return runtime


@pytest.fixture
def client(runtime):
    # No context manager: the lifespan would start the real engine
    app.state.runtime = runtime
    yield TestClient(app)
    del app.state.runtime


# ========== TESTS FOR QUERIES ========== #

def test_active_drift_passes_filters(client, runtime):
    # Act
    response = client.get("/api/drift/active", params={"environment": "production", "severity": "medium"})

    # Assert
    assert response.status_code == 200
    body = response.json()
    assert body[0]["id"] == str(RECORD.id)
    assert body[0]["diffs"][0]["path"] == "spec.replicas"
    runtime.queries.active_drift.assert_awaited_once_with(
        environment="production", service=None, severity=Severity.MEDIUM
    )


def test_drift_record_detail(client):
    response = client.get(f"/api/drift/records/{RECORD.id}")

    assert response.status_code == 200
    assert response.json()["record"]["identity"]["name"] == "web"


def test_unknown_record_is_404(client, runtime):
    runtime.queries.drift_detail.side_effect = RecordNotFound("no such drift")

    response = client.get(f"/api/drift/records/{uuid4()}")

    assert response.status_code == 404
    assert response.json()["detail"] == "no such drift"


def test_audit_trail(client, runtime):
    response = client.get(f"/api/drift/records/{RECORD.id}/audit")

    assert response.status_code == 200
    assert response.json()[0]["to_state"] == "open"
    runtime.queries.audit_trail.assert_awaited_once_with(drift_id=RECORD.id)


def test_events_reject_unknown_type(client):
    response = client.get("/api/drift/events", params={"event_type": "exploded"})

    assert response.status_code == 422


def test_events_forward_offset(client, runtime):
    response = client.get("/api/drift/events", params={"after": 5, "event_type": "classified"})

    assert response.status_code == 200
    runtime.queries.events.assert_awaited_once_with(
        after=5, limit=100, drift_id=None, event_type=EventType.CLASSIFIED
    )


# ========== TESTS FOR OPERATOR ACTIONS ========== #

def test_acknowledge(client, runtime):
    response = client.post(f"/api/drift/records/{RECORD.id}/acknowledge", json={"actor": "bob"})

    assert response.status_code == 200
    assert response.json()["status"] == "acknowledged"
    runtime.remediation.acknowledge.assert_awaited_once_with(RECORD.id, "bob")


def test_approve_is_accepted(client):
    response = client.post(f"/api/drift/records/{RECORD.id}/approve", json={"actor": "alice"})

    assert response.status_code == 202
    assert response.json()["approved_by"] == "alice"


@pytest.mark.parametrize("error", [
    InvalidTransition("Drift is open, not awaiting approval"),
    RemediationConflict(WEB.key),
])
def test_approve_conflicts_are_409(client, runtime, error):
    runtime.remediation.approve.side_effect = error

    response = client.post(f"/api/drift/records/{RECORD.id}/approve", json={"actor": "alice"})

    assert response.status_code == 409
    assert response.json()["detail"] == str(error)


def test_operator_action_requires_actor(client):
    response = client.post(f"/api/drift/records/{RECORD.id}/acknowledge", json={})

    assert response.status_code == 422


# ========== TESTS FOR EVENT REPLAY ========== #

def test_replay_known_consumer(client, runtime):
    response = client.post("/api/drift/events/consumers/remediation/replay", json={"from_offset": 10})

    assert response.status_code == 202
    runtime.bus.replay.assert_awaited_once_with("remediation", from_offset=10, forget_processed=False)


def test_replay_unknown_consumer_is_404(client, runtime):
    response = client.post("/api/drift/events/consumers/nobody/replay", json={})

    assert response.status_code == 404
    runtime.bus.replay.assert_not_awaited()
