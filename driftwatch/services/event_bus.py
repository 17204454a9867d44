"""
Event Bus
---------
Durable, ordered publication of drift lifecycle events.

Events are rows in an append-only log whose autoincrement key is the event
offset. Each consumer keeps a committed offset; delivery is at-least-once,
so consumers also record the idempotency key of every handled event and
skip keys they have already seen. A consumer can be rewound to any offset
to replay history after a restart.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import delete, func
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from driftwatch.core.drift.types import DriftEvent, EventType, utcnow
from driftwatch.core.observability import EVENTS_PUBLISHED_COUNTER, HealthMonitor
from driftwatch.core.retry import backoff_delay
from driftwatch.models.drift import ConsumerOffsetRow, DriftEventRow, ProcessedEventRow

logger = logging.getLogger(__name__)

EventHandler = Callable[[DriftEvent], Awaitable[None]]


def idempotency_token(event: DriftEvent) -> str:
    return "|".join(event.idempotency_key)


def stage_events(session, events: Iterable[DriftEvent]) -> None:
    """Add events to a caller's transaction so they commit with its writes."""
    for event in events:
        session.add(DriftEventRow.from_domain(event))


class Subscription:
    """One named consumer reading the log from its committed offset."""

    def __init__(self, bus: "EventBus", consumer: str, handler: EventHandler):
        self.bus = bus
        self.consumer = consumer
        self.handler = handler
        self.delivered = 0
        self.skipped_duplicates = 0
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def wake(self) -> None:
        self._wakeup.set()

    async def drain(self) -> int:
        """
        Deliver every event after the committed offset.

        Returns:
            Number of events handled (duplicates excluded)
        """
        handled = 0
        while True:
            offset = await self.bus.committed_offset(self.consumer)
            batch = await self.bus.read(after=offset, limit=self.bus.batch_size)
            if not batch:
                return handled
            for event in batch:
                if await self._deliver(event):
                    handled += 1

    async def _deliver(self, event: DriftEvent) -> bool:
        token = idempotency_token(event)
        if await self.bus.is_processed(self.consumer, token):
            logger.debug(f"{self.consumer} skipping duplicate event {token}")
            self.skipped_duplicates += 1
            await self.bus.commit(self.consumer, event)
            return False

        attempts = self.bus.max_delivery_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self.handler(event)
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt == attempts:
                    logger.error(
                        f"Consumer {self.consumer} failed on event {event.offset} "
                        f"after {attempts} attempts: {str(e)}"
                    )
                    if self.bus.health:
                        self.bus.health.mark_degraded(
                            f"consumer:{self.consumer}", f"event {event.offset} not handled: {e}"
                        )
                    break
                delay = backoff_delay(attempt, self.bus.retry_base_delay, self.bus.retry_max_delay)
                logger.warning(
                    f"Consumer {self.consumer} failed on event {event.offset}: {str(e)}; "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        await self.bus.commit(self.consumer, event)
        self.delivered += 1
        return True

    async def _run(self) -> None:
        logger.info(f"Consumer {self.consumer} started")
        while True:
            self._wakeup.clear()
            try:
                await self.drain()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Storage hiccup: keep the consumer alive and try again
                logger.exception(f"Consumer {self.consumer} loop error: {str(e)}")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.bus.poll_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=f"consumer:{self.consumer}")

    async def stop(self) -> None:
        if not self.running:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info(f"Consumer {self.consumer} stopped")
        self._task = None


class EventBus:
    """Append-only drift event log with durable consumer offsets."""

    def __init__(
        self,
        session_factory: sessionmaker,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        max_delivery_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        health: Optional[HealthMonitor] = None,
    ):
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_delivery_attempts = max_delivery_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.health = health
        self.subscriptions: Dict[str, Subscription] = {}

    # Publishing

    async def publish(self, events: List[DriftEvent]) -> List[DriftEvent]:
        """Append events on their own; returns them with offsets assigned."""
        rows = [DriftEventRow.from_domain(event) for event in events]
        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()
        published = [row.to_domain() for row in rows]
        self.published(published)
        return published

    def published(self, events: Iterable[DriftEvent]) -> None:
        """Called after a transaction carrying events has committed."""
        for event in events:
            EVENTS_PUBLISHED_COUNTER.labels(event_type=event.event_type.value).inc()
        for subscription in self.subscriptions.values():
            subscription.wake()

    # Reading

    async def read(
        self,
        after: int = 0,
        limit: int = 100,
        drift_id: Optional[UUID] = None,
        event_type: Optional[EventType] = None,
    ) -> List[DriftEvent]:
        query = select(DriftEventRow).where(DriftEventRow.seq > after)
        if drift_id:
            query = query.where(DriftEventRow.drift_id == drift_id)
        if event_type:
            query = query.where(DriftEventRow.event_type == event_type.value)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(DriftEventRow.seq).limit(limit))
            return [row.to_domain() for row in result.scalars().all()]

    async def latest_offset(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.max(DriftEventRow.seq)))
            return result.scalar() or 0

    # Consumer offsets

    async def committed_offset(self, consumer: str) -> int:
        async with self.session_factory() as session:
            row = await session.get(ConsumerOffsetRow, consumer)
            return row.position if row else 0

    async def is_processed(self, consumer: str, token: str) -> bool:
        async with self.session_factory() as session:
            row = await session.get(ProcessedEventRow, (consumer, token))
            return row is not None

    async def commit(self, consumer: str, event: DriftEvent) -> None:
        """Advance the consumer past ``event`` and remember its idempotency key."""
        async with self.session_factory() as session:
            row = await session.get(ConsumerOffsetRow, consumer)
            if row is None:
                row = ConsumerOffsetRow(consumer=consumer)
                session.add(row)
            if event.offset is not None and event.offset > row.position:
                row.position = event.offset
            row.updated_at = utcnow()
            await session.merge(ProcessedEventRow(consumer=consumer, idempotency_key=idempotency_token(event)))
            await session.commit()

    async def seek(self, consumer: str, offset: int) -> None:
        """Rewind or fast-forward a consumer; the next delivery starts after ``offset``."""
        async with self.session_factory() as session:
            row = await session.get(ConsumerOffsetRow, consumer)
            if row is None:
                row = ConsumerOffsetRow(consumer=consumer)
                session.add(row)
            row.position = max(offset, 0)
            row.updated_at = utcnow()
            await session.commit()
        logger.info(f"Consumer {consumer} repositioned to offset {offset}")

    async def replay(self, consumer: str, from_offset: int = 0, forget_processed: bool = False) -> None:
        """
        Re-deliver events after ``from_offset`` to a consumer.

        Without ``forget_processed`` the consumer's idempotency keys still
        filter events it has already handled.
        """
        if forget_processed:
            async with self.session_factory() as session:
                await session.execute(delete(ProcessedEventRow).where(ProcessedEventRow.consumer == consumer))
                await session.commit()
        await self.seek(consumer, from_offset)
        subscription = self.subscriptions.get(consumer)
        if subscription:
            subscription.wake()

    # Subscriptions

    def subscribe(self, consumer: str, handler: EventHandler) -> Subscription:
        if consumer in self.subscriptions:
            raise ValueError(f"Consumer {consumer} is already subscribed")
        subscription = Subscription(self, consumer, handler)
        self.subscriptions[consumer] = subscription
        return subscription

    def start(self) -> None:
        for subscription in self.subscriptions.values():
            subscription.start()

    async def stop(self) -> None:
        await asyncio.gather(*(s.stop() for s in self.subscriptions.values()), return_exceptions=True)

    # Maintenance

    async def compact(self, cutoff: datetime) -> int:
        """
        Drop events older than ``cutoff`` that every consumer has moved past.

        Returns:
            Number of events removed
        """
        async with self.session_factory() as session:
            floor = (await session.execute(select(func.min(ConsumerOffsetRow.position)))).scalar()
            query = delete(DriftEventRow).where(DriftEventRow.timestamp < cutoff)
            if floor is not None:
                query = query.where(DriftEventRow.seq < floor)
            result = await session.execute(query)
            await session.execute(delete(ProcessedEventRow).where(ProcessedEventRow.processed_at < cutoff))
            await session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Compacted {removed} events older than {cutoff.isoformat()}")
        return removed
