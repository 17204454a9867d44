"""
Desired-State Resolver
----------------------
Keeps the most recent committed desired state per managed resource.

Change notifications are resolved concurrently across resources. For any
single resource, fetches run one at a time in notification order through a
per-resource sequence gate, and superseded notifications are skipped.
Reads are served from the applied map, so a caller that awaited
``handle_change`` reads its own write.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict

from driftwatch.core.drift.types import ResourceIdentity, utcnow
from driftwatch.core.errors import DataIntegrityError, SourceUnavailable
from driftwatch.core.keyed import SequenceGate
from driftwatch.core.observability import HealthMonitor
from driftwatch.core.retry import retry_with_backoff
from driftwatch.services.collaborators import ConfigSource, RawState
from driftwatch.services.store import DriftStore

logger = logging.getLogger(__name__)

COMPONENT = "config_source"

ChangeListener = Callable[[ResourceIdentity], None]
ReadyListener = Callable[[], None]


class DesiredEntry(BaseModel):
    """Latest applied desired state of one resource."""

    model_config = ConfigDict(frozen=True)

    identity: ResourceIdentity
    manifest: Optional[RawState] = None
    revision: str = ""
    sequence: int = 0
    applied_at: datetime
    # Comparisons for the resource wait while the source is unreachable
    paused: bool = False
    error: Optional[str] = None

    @property
    def declared(self) -> bool:
        return self.manifest is not None


class DesiredStateResolver:
    """Latest known declared configuration per managed resource."""

    def __init__(
        self,
        source: ConfigSource,
        store: Optional[DriftStore] = None,
        health: Optional[HealthMonitor] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ):
        self.source = source
        self.store = store
        self.health = health
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.gate = SequenceGate()
        self.ready = False
        self._entries: Dict[str, DesiredEntry] = {}
        self._listeners: List[ChangeListener] = []
        self._ready_listeners: List[ReadyListener] = []
        self._pending: Set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def add_ready_listener(self, listener: ReadyListener) -> None:
        """Called once the initial sync has finished, successfully or not."""
        self._ready_listeners.append(listener)

    # Reads

    def get(self, identity: ResourceIdentity) -> Optional[DesiredEntry]:
        return self._entries.get(identity.key)

    def keys(self) -> List[ResourceIdentity]:
        return [entry.identity for entry in self._entries.values()]

    def revision_of(self, identity: ResourceIdentity) -> Optional[str]:
        entry = self._entries.get(identity.key)
        return entry.revision if entry else None

    # Resolution

    async def handle_change(self, identity: ResourceIdentity, revision: Optional[str] = None) -> Optional[DesiredEntry]:
        """
        Resolve one resource and apply the result in notification order.

        Fetches for one resource run one at a time inside its turn, so a
        later fetch always reads a revision at least as new as an earlier
        one. A notification superseded by a newer pending one for the same
        resource is skipped; the newer one fetches on its behalf.

        Args:
            identity: Resource whose declared manifest changed
            revision: Revision carried by the notification, if any

        Returns:
            The entry now served for the resource
        """
        key = identity.key
        ticket = self.gate.ticket(key)
        error: Optional[str] = None
        paused = False

        async with self.gate.turn(key, ticket):
            previous = self._entries.get(key)
            if previous is not None and not self.gate.is_latest(key, ticket):
                logger.debug(f"Skipping superseded notification {revision!r} for {key}")
                return previous

            try:
                manifest, resolved_revision = await retry_with_backoff(
                    lambda: self.source.resolve(identity.path),
                    name=f"resolve {key}",
                    max_retries=self.max_retries,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    retry_on=(SourceUnavailable,),
                )
            except SourceUnavailable as e:
                paused = True
                error = str(e)
                if self.health:
                    self.health.mark_degraded(COMPONENT, error)
            except DataIntegrityError as e:
                error = str(e)
                logger.error(f"Malformed desired state for {key}: {error}")
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.exception(f"Resolving desired state for {key} failed: {error}")

            if paused or error:
                # Keep serving the last good manifest; the failure is visible on the entry
                entry = DesiredEntry(
                    identity=identity,
                    manifest=previous.manifest if previous else None,
                    revision=previous.revision if previous else "",
                    sequence=ticket,
                    applied_at=previous.applied_at if previous else utcnow(),
                    paused=paused,
                    error=error,
                )
            else:
                entry = DesiredEntry(
                    identity=identity,
                    manifest=manifest,
                    revision=resolved_revision or revision or "",
                    sequence=ticket,
                    applied_at=utcnow(),
                )
                if self.health and not self.health.is_ok(COMPONENT):
                    self.health.mark_ok(COMPONENT)
            self._entries[key] = entry

        if error and not paused and self.store:
            await self.store.set_error_state(identity, f"desired state: {error}")

        if not paused:
            logger.debug(f"Applied desired revision {entry.revision!r} for {key}")
            self._notify(identity)
        return entry

    def _notify(self, identity: ResourceIdentity) -> None:
        for listener in self._listeners:
            listener(identity)

    def _mark_ready(self) -> None:
        if self.ready:
            return
        self.ready = True
        for listener in self._ready_listeners:
            listener()

    def _spawn(self, identity: ResourceIdentity, revision: Optional[str]) -> None:
        task = asyncio.create_task(self.handle_change(identity, revision))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def initial_sync(self) -> int:
        """Resolve every declared resource once."""
        identities = await retry_with_backoff(
            self.source.list_resources,
            name="list declared resources",
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_on=(SourceUnavailable,),
        )
        await asyncio.gather(*(self.handle_change(identity) for identity in identities))
        self._mark_ready()
        logger.info(f"Initial desired-state sync resolved {len(identities)} resources")
        return len(identities)

    async def _run(self) -> None:
        try:
            await self.initial_sync()
        except SourceUnavailable as e:
            # The change stream still fills the map as the source recovers
            logger.error(f"Initial desired-state sync failed: {str(e)}")
            if self.health:
                self.health.mark_degraded(COMPONENT, f"initial sync failed: {e}")
            self._mark_ready()

        attempt = 0
        while True:
            try:
                async for identity, revision in self.source.changes():
                    attempt = 0
                    self._spawn(identity, revision)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt += 1
                delay = min(self.base_delay * (2 ** min(attempt, 10)), self.max_delay)
                logger.warning(f"Configuration change stream lost: {str(e)}; reconnecting in {delay:.1f}s")
                if self.health:
                    self.health.mark_degraded(COMPONENT, f"change stream lost: {e}")
                await asyncio.sleep(delay)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="desired-state-resolver")

    async def stop(self) -> None:
        tasks = list(self._pending)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None

    # Write path

    async def propose_remediation_commit(self, identity: ResourceIdentity, manifest: RawState, message: str) -> str:
        """
        Propose a change to the configuration source through its review workflow.

        The engine never writes the source directly; the returned reference
        identifies the proposal.
        """
        reference = await retry_with_backoff(
            lambda: self.source.propose_commit(identity.path, manifest, message),
            name=f"propose commit {identity.key}",
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_on=(SourceUnavailable,),
        )
        logger.info(f"Proposed remediation commit {reference} for {identity.key}")
        return reference
