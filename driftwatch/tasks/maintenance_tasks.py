"""
Celery Tasks for Maintenance
----------------------------
Retention and housekeeping for the drift store and the event log. The
engine itself runs in the API process; these tasks only touch durable state.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from celery import Task

from driftwatch.core.celery_app import celery_app
from driftwatch.core.config import settings
from driftwatch.core.database import build_engine, build_session_factory
from driftwatch.core.drift.types import utcnow
from driftwatch.services.event_bus import EventBus
from driftwatch.services.store import DriftStore

logger = logging.getLogger(__name__)


class AsyncTask(Task):
    """Base class for Celery tasks written as coroutines."""

    def __call__(self, *args, **kwargs):
        """Execute the task in a fresh asyncio event loop."""
        result = self.run(*args, **kwargs)
        if not inspect.isawaitable(result):
            return result
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(result)
        finally:
            loop.close()


async def archive_absent(store: DriftStore, retention_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Archive resources absent from both sources for ``retention_days``."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    archived = await store.archive_absent_resources(cutoff)
    if archived:
        logger.info(f"Archived {archived} resources absent since before {cutoff.isoformat()}")
    return {"archived_resources": archived, "cutoff": cutoff.isoformat()}


async def purge_terminal(store: DriftStore, retention_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Delete resolved and expired records older than ``retention_days``."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    deleted = await store.purge_records(cutoff)
    logger.info(f"Purged {deleted} resolved or expired drift records older than {retention_days} days")
    return {"deleted_records": deleted, "cutoff": cutoff.isoformat()}


async def compact_events(bus: EventBus, retention_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Drop events every consumer has read that are older than ``retention_days``."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    removed = await bus.compact(cutoff)
    return {"removed_events": removed, "cutoff": cutoff.isoformat()}


async def _with_store(operation, *args) -> Dict[str, Any]:
    # Each task run gets its own engine; pooled connections are bound to their loop
    engine = build_engine(settings.ASYNC_DATABASE_URL)
    try:
        session_factory = build_session_factory(engine)
        return await operation(session_factory, *args)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, base=AsyncTask, max_retries=3)
async def archive_stale_resources(self, retention_days: Optional[int] = None):
    """Archive managed resources gone from desired and live state."""
    retention_days = retention_days or settings.ARCHIVE_RETENTION_DAYS
    logger.info(f"Starting archival of resources absent for {retention_days} days")
    return await _with_store(
        lambda factory, days: archive_absent(DriftStore(factory), days), retention_days
    )


@celery_app.task(bind=True, base=AsyncTask, max_retries=3)
async def purge_old_records(self, retention_days: Optional[int] = None):
    """Apply the drift record retention policy."""
    retention_days = retention_days or settings.DRIFT_RETENTION_DAYS
    logger.info(f"Starting purge of drift records older than {retention_days} days")
    return await _with_store(
        lambda factory, days: purge_terminal(DriftStore(factory), days), retention_days
    )


@celery_app.task(bind=True, base=AsyncTask, max_retries=3)
async def compact_event_log(self, retention_days: Optional[int] = None):
    """Compact the event log below every consumer's committed offset."""
    retention_days = retention_days or settings.EVENT_RETENTION_DAYS
    logger.info(f"Starting event log compaction for events older than {retention_days} days")
    return await _with_store(
        lambda factory, days: compact_events(EventBus(factory), days), retention_days
    )
