from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Dict, Any, List, Optional
from uuid import UUID
from pydantic import BaseModel

from driftwatch.core.drift.correlator import CorrelatedDrift
from driftwatch.core.drift.types import (
    AuditEntry, DriftEvent, DriftRecord, EventType, RemediationDecision, Severity
)
from driftwatch.core.errors import InvalidTransition, RecordNotFound, RemediationConflict
from driftwatch.services.queries import DriftDetail, DriftQueries, DriftSummary, ResourceError
from driftwatch.services.remediation import RemediationEngine


class OperatorAction(BaseModel):
    """Request body for operator actions on a drift record"""
    actor: str
    reason: str = ""


class ReplayRequest(BaseModel):
    """Request body for rewinding an event consumer"""
    from_offset: int = 0
    forget_processed: bool = False


router = APIRouter(prefix="/drift", tags=["Drift Detection"])


def get_queries(request: Request) -> DriftQueries:
    return request.app.state.runtime.queries


def get_remediation(request: Request) -> RemediationEngine:
    return request.app.state.runtime.remediation


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/active", response_model=List[DriftRecord])
async def get_active_drift(
    environment: Optional[str] = None,
    service: Optional[str] = Query(None, description="Resource name or kind/name"),
    severity: Optional[Severity] = None,
    queries: DriftQueries = Depends(get_queries),
):
    """Active drift, optionally filtered by environment, service and severity"""
    return await queries.active_drift(environment=environment, service=service, severity=severity)


@router.get("/summary", response_model=DriftSummary)
async def get_drift_summary(queries: DriftQueries = Depends(get_queries)):
    return await queries.summary()


@router.get("/records/{drift_id}", response_model=DriftDetail)
async def get_drift_record(drift_id: UUID, queries: DriftQueries = Depends(get_queries)):
    """Get a drift record with its remediation decisions"""
    try:
        return await queries.drift_detail(drift_id)
    except RecordNotFound as e:
        raise _not_found(e)


@router.get("/records/{drift_id}/decisions", response_model=List[RemediationDecision])
async def get_drift_decisions(drift_id: UUID, queries: DriftQueries = Depends(get_queries)):
    try:
        return await queries.decisions(drift_id)
    except RecordNotFound as e:
        raise _not_found(e)


@router.get("/records/{drift_id}/audit", response_model=List[AuditEntry])
async def get_drift_audit(drift_id: UUID, queries: DriftQueries = Depends(get_queries)):
    """Audit trail of every transition of a drift record"""
    return await queries.audit_trail(drift_id=drift_id)


@router.get("/decisions/{decision_id}/audit", response_model=List[AuditEntry])
async def get_decision_audit(decision_id: UUID, queries: DriftQueries = Depends(get_queries)):
    """Audit trail of a single remediation action"""
    try:
        return await queries.audit_trail(decision_id=decision_id)
    except RecordNotFound as e:
        raise _not_found(e)


@router.get("/resources/{resource_key:path}/history", response_model=List[DriftRecord])
async def get_resource_history(
    resource_key: str,
    limit: int = Query(100, ge=1, le=1000),
    queries: DriftQueries = Depends(get_queries),
):
    """Drift history for one resource, newest first"""
    return await queries.resource_history(resource_key, limit=limit)


@router.get("/correlations", response_model=List[CorrelatedDrift])
async def get_correlations(
    include_single: bool = False,
    queries: DriftQueries = Depends(get_queries),
):
    """Drift of the same logical resource across environments"""
    return await queries.correlations(spreading_only=not include_single)


@router.get("/errors", response_model=List[ResourceError])
async def get_resource_errors(
    environment: Optional[str] = None,
    queries: DriftQueries = Depends(get_queries),
):
    """Resources that cannot be compared, with the reason"""
    return await queries.resource_errors(environment)


@router.get("/events", response_model=List[DriftEvent])
async def get_events(
    after: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    drift_id: Optional[UUID] = None,
    event_type: Optional[EventType] = None,
    queries: DriftQueries = Depends(get_queries),
):
    """Read the event log after an offset"""
    return await queries.events(after=after, limit=limit, drift_id=drift_id, event_type=event_type)


@router.post("/events/consumers/{consumer}/replay", status_code=status.HTTP_202_ACCEPTED)
async def replay_consumer(consumer: str, body: ReplayRequest, request: Request):
    """Rewind an event consumer so it re-reads the log after ``from_offset``"""
    bus = request.app.state.runtime.bus
    if consumer not in bus.subscriptions:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown consumer {consumer}")
    await bus.replay(consumer, from_offset=body.from_offset, forget_processed=body.forget_processed)
    return {"status": "replaying", "consumer": consumer, "from_offset": body.from_offset}


async def _operator_action(action, drift_id: UUID, *args) -> Any:
    try:
        return await action(drift_id, *args)
    except RecordNotFound as e:
        raise _not_found(e)
    except (InvalidTransition, RemediationConflict) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/records/{drift_id}/acknowledge", response_model=DriftRecord)
async def acknowledge_drift(
    drift_id: UUID,
    body: OperatorAction,
    remediation: RemediationEngine = Depends(get_remediation),
):
    return await _operator_action(remediation.acknowledge, drift_id, body.actor)


@router.post("/records/{drift_id}/suppress", response_model=DriftRecord)
async def suppress_drift(
    drift_id: UUID,
    body: OperatorAction,
    remediation: RemediationEngine = Depends(get_remediation),
):
    """Operator override: stop notifications while the diff is unchanged"""
    return await _operator_action(remediation.suppress, drift_id, body.actor, body.reason)


@router.post("/records/{drift_id}/approve", response_model=RemediationDecision,
             status_code=status.HTTP_202_ACCEPTED)
async def approve_remediation(
    drift_id: UUID,
    body: OperatorAction,
    remediation: RemediationEngine = Depends(get_remediation),
):
    """External approval event for a remediation awaiting approval"""
    return await _operator_action(remediation.approve, drift_id, body.actor)


@router.post("/records/{drift_id}/request-approval", response_model=RemediationDecision)
async def request_reapproval(
    drift_id: UUID,
    body: OperatorAction,
    remediation: RemediationEngine = Depends(get_remediation),
):
    """Send a failed remediation back for approval"""
    return await _operator_action(remediation.request_reapproval, drift_id, body.actor, body.reason)


@router.get("/health", response_model=Dict[str, Any])
async def get_engine_health(request: Request):
    """Component health plus watcher and pipeline state"""
    runtime = request.app.state.runtime
    snapshot = runtime.health.snapshot()
    snapshot["watcher"] = {
        "ready": runtime.watcher.ready,
        "stale": runtime.watcher.is_stale(),
        "last_resync_at": runtime.watcher.last_resync_at,
        "missed_resyncs": runtime.watcher.missed_resyncs,
        "resync_job": runtime.watcher.resync_job.stats,
    }
    snapshot["resolver"] = {"ready": runtime.resolver.ready}
    snapshot["pipeline"] = {"backlog": runtime.engine.backlog}
    return snapshot
