"""
Engine Runtime
--------------
Wires the drift engine's components together and owns their lifecycle.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from driftwatch.core.drift.classifier import Scorer, build_classifier
from driftwatch.core.drift.correlator import Correlator
from driftwatch.core.drift.normalizer import NormalizationRegistry
from driftwatch.core.drift.severity import ScoringPolicy
from driftwatch.core.observability import HealthMonitor
from driftwatch.services.collaborators import (
    ConfigSource, HttpConfigSource, HttpResourceProvider, HttpScorer, ResourceProvider
)
from driftwatch.services.event_bus import EventBus
from driftwatch.services.pipeline import DriftEngine
from driftwatch.services.queries import DriftQueries
from driftwatch.services.remediation import CONSUMER_NAME, RemediationEngine, RemediationPolicy
from driftwatch.services.resolver import DesiredStateResolver
from driftwatch.services.store import DriftStore
from driftwatch.services.watcher import LiveStateWatcher

logger = logging.getLogger(__name__)


class DriftRuntime:
    """All long-running engine components built from one settings object."""

    def __init__(
        self,
        settings: Any,
        source: ConfigSource,
        provider: ResourceProvider,
        session_factory: sessionmaker,
        scorer: Optional[Scorer] = None,
        health: Optional[HealthMonitor] = None,
        service_retries: Optional[int] = None,
    ):
        self.settings = settings
        self.source = source
        self.provider = provider
        self.scorer = scorer
        self.health = health or HealthMonitor()

        # Collaborators that retry on their own get service_retries=0
        retry = {
            "max_retries": settings.HTTP_MAX_RETRIES if service_retries is None else service_retries,
            "base_delay": settings.BACKOFF_BASE_SECONDS,
            "max_delay": settings.BACKOFF_MAX_SECONDS,
        }

        self.policy = ScoringPolicy.from_settings(settings)
        self.registry = NormalizationRegistry()
        if settings.NORMALIZATION_RULES_FILE:
            self.registry.load_file(settings.NORMALIZATION_RULES_FILE)

        self.bus = EventBus(
            session_factory,
            poll_interval=settings.EVENT_POLL_INTERVAL_SECONDS,
            batch_size=settings.EVENT_BATCH_SIZE,
            max_delivery_attempts=settings.EVENT_MAX_DELIVERY_ATTEMPTS,
            retry_base_delay=settings.BACKOFF_BASE_SECONDS,
            retry_max_delay=settings.BACKOFF_MAX_SECONDS,
            health=self.health,
        )
        self.store = DriftStore(session_factory, self.bus)
        self.resolver = DesiredStateResolver(source, self.store, self.health, **retry)
        self.watcher = LiveStateWatcher(
            provider,
            settings.MONITORED_ENVIRONMENTS,
            resync_interval_seconds=settings.RESYNC_INTERVAL_SECONDS,
            stale_factor=settings.RESYNC_STALE_FACTOR,
            health=self.health,
            **retry,
        )
        self.classifier = build_classifier(settings, self.policy, scorer, self.health)
        self.correlator = Correlator(
            suppression_window_seconds=settings.SUPPRESSION_WINDOW_SECONDS,
            correlation_window_seconds=settings.CORRELATION_WINDOW_SECONDS,
        )
        self.remediation = RemediationEngine(
            self.store,
            provider,
            self.resolver,
            self.watcher,
            policy=RemediationPolicy.from_settings(settings),
            scoring=self.policy,
            registry=self.registry,
            health=self.health,
        )
        self.engine = DriftEngine(
            self.store,
            self.resolver,
            self.watcher,
            self.classifier,
            correlator=self.correlator,
            policy=self.policy,
            registry=self.registry,
            worker_count=settings.WORKER_COUNT,
            health=self.health,
            remediation=self.remediation,
        )
        self.bus.subscribe(CONSUMER_NAME, self.remediation.handle_event)
        self.queries = DriftQueries(self.store, self.bus, self.correlator, self.health)

    async def start(self) -> None:
        await self.remediation.recover_interrupted()
        self.engine.start()
        self.bus.start()
        self.resolver.start()
        self.watcher.start()
        logger.info(
            f"Drift engine running for environments {', '.join(self.settings.MONITORED_ENVIRONMENTS)}"
        )

    async def stop(self) -> None:
        await self.watcher.stop()
        await self.resolver.stop()
        await self.bus.stop()
        await self.remediation.stop()
        await self.engine.stop()
        for collaborator in (self.source, self.provider, self.scorer):
            close = getattr(collaborator, "aclose", None)
            if close is not None:
                await close()
        logger.info("Drift engine stopped")


def build_runtime(settings: Any, session_factory: sessionmaker) -> DriftRuntime:
    """Build a runtime talking to the HTTP collaborators named in ``settings``."""
    http = {
        "timeout": settings.HTTP_TIMEOUT_SECONDS,
        "max_retries": settings.HTTP_MAX_RETRIES,
        "base_delay": settings.BACKOFF_BASE_SECONDS,
        "max_delay": settings.BACKOFF_MAX_SECONDS,
    }
    scorer = None
    if settings.SCORER_URL:
        scorer = HttpScorer(settings.SCORER_URL, timeout=settings.SCORER_TIMEOUT_SECONDS)
    return DriftRuntime(
        settings,
        HttpConfigSource(settings.CONFIG_SOURCE_URL, **http),
        HttpResourceProvider(settings.RESOURCE_PROVIDER_URL, **http),
        session_factory,
        scorer=scorer,
        service_retries=0,
    )
