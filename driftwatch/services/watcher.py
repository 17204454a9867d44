"""
Live-State Watcher
------------------
Eventually-consistent view of live state per resource, fed by the
provider's change feed and healed by a periodic full resync. A missed
resync marks the provider degraded; live state older than the stale
threshold pauses comparisons until a resync succeeds.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from driftwatch.core.drift.types import ResourceIdentity, utcnow
from driftwatch.core.errors import ProviderUnavailable
from driftwatch.core.observability import HealthMonitor
from driftwatch.core.retry import retry_with_backoff
from driftwatch.core.scheduler import PeriodicJob
from driftwatch.services.collaborators import RawState, ResourceProvider

logger = logging.getLogger(__name__)

COMPONENT = "resource_provider"
FEED_COMPONENT = "resource_provider_feed"

ChangeListener = Callable[[ResourceIdentity], None]
ResyncListener = Callable[[], None]


class LiveEntry(BaseModel):
    """Latest observed state of one resource; ``state`` is None once deleted."""

    model_config = ConfigDict(frozen=True)

    identity: ResourceIdentity
    state: Optional[RawState] = None
    observed_at: datetime

    @property
    def present(self) -> bool:
        return self.state is not None


class LiveStateWatcher:
    """Change-feed ingestion plus periodic resync for a set of environments."""

    def __init__(
        self,
        provider: ResourceProvider,
        environments: List[str],
        resync_interval_seconds: float = 300,
        stale_factor: float = 2.0,
        health: Optional[HealthMonitor] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ):
        self.provider = provider
        self.environments = environments
        self.resync_interval = resync_interval_seconds
        self.stale_after = timedelta(seconds=resync_interval_seconds * stale_factor)
        self.health = health
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.last_resync_at: Optional[datetime] = None
        self.missed_resyncs = 0
        self._entries: Dict[str, LiveEntry] = {}
        self._listeners: List[ChangeListener] = []
        self._resync_listeners: List[ResyncListener] = []
        self._feed_task: Optional[asyncio.Task] = None
        self.resync_job = PeriodicJob(
            "live-state-resync",
            self.resync,
            interval_seconds=resync_interval_seconds,
            on_failure=self._on_resync_failure,
        )

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def add_resync_listener(self, listener: ResyncListener) -> None:
        self._resync_listeners.append(listener)

    # Reads

    @property
    def ready(self) -> bool:
        """True once a full resync has completed."""
        return self.last_resync_at is not None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        if self.last_resync_at is None:
            return True
        return (now or utcnow()) - self.last_resync_at > self.stale_after

    def get(self, identity: ResourceIdentity) -> Optional[LiveEntry]:
        return self._entries.get(identity.key)

    def keys(self) -> List[ResourceIdentity]:
        return [entry.identity for entry in self._entries.values()]

    # Ingestion

    def apply(self, identity: ResourceIdentity, state: Optional[RawState]) -> bool:
        """
        Record an observation.

        Returns:
            True if the observed state differs from the cached one
        """
        previous = self._entries.get(identity.key)
        self._entries[identity.key] = LiveEntry(identity=identity, state=state, observed_at=utcnow())
        changed = previous is None or previous.state != state
        if changed:
            for listener in self._listeners:
                listener(identity)
        return changed

    async def refresh(self, identity: ResourceIdentity) -> Optional[RawState]:
        """Re-fetch one resource from the provider and update the cache."""
        state = await retry_with_backoff(
            lambda: self.provider.get_state(identity),
            name=f"get live state {identity.key}",
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_on=(ProviderUnavailable,),
        )
        self.apply(identity, state)
        return state

    async def resync(self) -> int:
        """
        Full reconciliation against the provider for every environment.

        Resources cached for an environment but no longer listed are
        recorded as deleted.

        Returns:
            Number of resources observed
        """
        observed = 0
        for environment in self.environments:
            items = await retry_with_backoff(
                lambda: self.provider.list_states(environment),
                name=f"resync {environment}",
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                retry_on=(ProviderUnavailable,),
            )
            seen = set()
            for identity, state in items:
                seen.add(identity.key)
                self.apply(identity, state)
            for key, entry in list(self._entries.items()):
                if entry.identity.environment == environment and key not in seen and entry.present:
                    self.apply(entry.identity, None)
            observed += len(items)

        self.last_resync_at = utcnow()
        if self.missed_resyncs:
            logger.info(f"Live-state resync recovered after {self.missed_resyncs} missed runs")
        self.missed_resyncs = 0
        if self.health:
            self.health.mark_ok(COMPONENT)
        for listener in self._resync_listeners:
            listener()
        logger.debug(f"Resync observed {observed} live resources")
        return observed

    def _on_resync_failure(self, error: Exception) -> None:
        self.missed_resyncs += 1
        if self.health:
            self.health.mark_degraded(
                COMPONENT, f"missed resync ({self.missed_resyncs} in a row): {error}"
            )

    async def _run_feed(self) -> None:
        attempt = 0
        while True:
            try:
                async for identity, state in self.provider.watch():
                    if attempt:
                        attempt = 0
                        if self.health:
                            self.health.mark_ok(FEED_COMPONENT)
                    self.apply(identity, state)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt += 1
                delay = min(self.base_delay * (2 ** min(attempt, 10)), self.max_delay)
                logger.warning(f"Live change feed lost: {type(e).__name__}: {e}; reconnecting in {delay:.1f}s")
                if self.health:
                    self.health.mark_degraded(FEED_COMPONENT, f"change feed lost: {type(e).__name__}: {e}")
                await asyncio.sleep(delay)
                # Heal whatever the feed missed while it was down
                await self.resync_job.run_once()

    def start(self) -> None:
        self.resync_job.start()
        if self._feed_task is None or self._feed_task.done():
            self._feed_task = asyncio.create_task(self._run_feed(), name="live-state-feed")

    async def stop(self) -> None:
        await self.resync_job.stop()
        if self._feed_task is not None:
            self._feed_task.cancel()
            try:
                await self._feed_task
            except asyncio.CancelledError:
                logger.info("Live change feed stopped")
            self._feed_task = None
