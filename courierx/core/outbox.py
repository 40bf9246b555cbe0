"""
Transactional outbox publisher.

The state machine writes one `shipment.status_changed` row per committed
transition in the same transaction as the status change. This publisher
drains unpublished rows to subscribers (UI push, notification fan-out,
analytics) and marks them published. Delivery is at-least-once: a row is
only marked once every subscriber accepted it.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.database.connection import get_session_factory
from courierx.database.models import OutboxEvent, utcnow
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Subscriber = Callable[[Dict[str, Any]], Awaitable[None]]


async def log_subscriber(event_data: Dict[str, Any]) -> None:
    """Default subscriber that records the event."""
    logger.info(
        "outbox_event_delivered",
        event_type=event_data.get("event_type"),
        aggregate_id=event_data.get("aggregate_id"),
    )


def event_to_dict(event: OutboxEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "aggregate_id": str(event.aggregate_id),
        "aggregate_type": event.aggregate_type,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }


class OutboxPublisher:
    """
    Publishes events from the outbox table to subscribers.

    1. Read a batch of unpublished events
    2. Hand each to every subscriber
    3. Mark the fully delivered ones as published
    """

    def __init__(
        self,
        subscribers: Optional[List[Subscriber]] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        self.subscribers: List[Subscriber] = list(subscribers or [log_subscriber])
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def subscribe(self, subscriber: Subscriber) -> None:
        self.subscribers.append(subscriber)

    async def _fetch_unpublished_events(self) -> List[OutboxEvent]:
        async with self.session_factory() as db:
            stmt = (
                select(OutboxEvent)
                .where(OutboxEvent.published.is_(False))
                .order_by(OutboxEvent.created_at, OutboxEvent.id)
                .limit(self.batch_size)
            )
            return list((await db.execute(stmt)).scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        event_data = event_to_dict(event)
        start = time.time()
        for subscriber in self.subscribers:
            try:
                await subscriber(event_data)
            except Exception as e:
                logger.error(
                    "outbox_event_publish_failed",
                    event_id=event.id,
                    event_type=event.event_type,
                    subscriber=getattr(subscriber, "__name__", repr(subscriber)),
                    error=str(e),
                )
                return False
        metrics.record_outbox_event_published(event.event_type, time.time() - start)
        return True

    async def _mark_as_published(self, event_ids: List[int]) -> None:
        if not event_ids:
            return
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(event_ids))
                    .values(published=True, published_at=utcnow())
                )

    async def process_batch(self) -> int:
        """Publish one batch. Returns the number of events marked published."""
        events = await self._fetch_unpublished_events()
        if not events:
            metrics.set_outbox_queue_depth(0)
            return 0

        published_ids = [event.id for event in events if await self._publish_event(event)]
        await self._mark_as_published(published_ids)

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(events) - len(published_ids),
        )
        metrics.set_outbox_queue_depth(await self.get_pending_count())
        return len(published_ids)

    async def start(self) -> None:
        """Poll until stopped."""
        self._running = True
        logger.info("outbox_publisher_started", batch_size=self.batch_size)
        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0
                # Drain immediately while there is a backlog.
                await asyncio.sleep(0.1 if published_count else self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        self._running = False

    async def get_pending_count(self) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count()).select_from(OutboxEvent).where(
                OutboxEvent.published.is_(False)
            )
            return int((await db.execute(stmt)).scalar_one())
