"""OutboxRelay: claims due outbox rows and publishes them onto the event bus."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.enums import OutboxStatus
from src.models.outbox_event import OutboxEvent
from src.modules.events.bus import EventBus
from src.modules.events.outbox_service import OutboxService
from src.modules.events.schemas import DomainEvent, EventMetadata
from src.modules.pipeline import metrics

logger = logging.getLogger(__name__)


class OutboxRelay:
    """Publishes pending outbox events, one short claim transaction at a time.

    Each claim locks a batch with FOR UPDATE SKIP LOCKED, flips it to
    PROCESSING and commits; publishing happens outside that transaction so
    a slow handler never holds row locks. A tick keeps claiming until no due
    rows remain, skipping rows it already retried so that a failed event
    waits for the next tick before its retry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
        batch_size: int = 50,
        max_retries: int = 5,
        stall_threshold_minutes: int = 15,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.stall_threshold_minutes = stall_threshold_minutes

    def _service(self, session: AsyncSession) -> OutboxService:
        return OutboxService(session, max_retries=self.max_retries)

    async def run_once(self) -> dict:
        """Run one relay tick.

        Returns dict with 'claimed', 'published', 'retried', 'failed' and
        'reclaimed' counts.
        """
        stats = {"claimed": 0, "published": 0, "retried": 0, "failed": 0, "reclaimed": 0}
        stats["reclaimed"] = await self.reclaim_stalled()

        # Only retried rows can match a later claim in this tick.
        retried: set[uuid.UUID] = set()
        while True:
            events = await self._claim(retried)
            if not events:
                break
            stats["claimed"] += len(events)

            for event in events:
                outcome = await self._process_event(event)
                if outcome == OutboxStatus.PUBLISHED:
                    stats["published"] += 1
                elif outcome == OutboxStatus.PENDING:
                    retried.add(event.id)
                    stats["retried"] += 1
                elif outcome == OutboxStatus.FAILED:
                    stats["failed"] += 1

        if stats["claimed"]:
            logger.debug("Processed %d outbox events", stats["claimed"])
        return stats

    async def _claim(self, retried: set[uuid.UUID]) -> list[OutboxEvent]:
        async with self._session_factory() as session:
            async with session.begin():
                return await self._service(session).claim_due(
                    self.batch_size, exclude_ids=retried
                )

    async def _process_event(self, event: OutboxEvent) -> OutboxStatus | None:
        try:
            await self._bus.publish(_to_domain_event(event))
        except Exception as exc:
            logger.error("Failed to publish outbox event %s (%s): %s", event.id, event.event_name, exc)
            return await self._record_failure(event, str(exc))

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._service(session).mark_published(event.id)
        except Exception:
            # The row stays PROCESSING and is reclaimed by the stall scan.
            logger.exception("Published outbox event %s but could not mark it", event.id)
            return None

        metrics.outbox_published.inc()
        logger.debug("Published event %s from outbox with id %s", event.event_name, event.id)
        return OutboxStatus.PUBLISHED

    async def _record_failure(self, event: OutboxEvent, error: str) -> OutboxStatus | None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    status = await self._service(session).record_failure(event.id, error)
        except Exception:
            logger.exception("Could not record publish failure for outbox event %s", event.id)
            return None

        terminal = status == OutboxStatus.FAILED
        metrics.outbox_failures.labels(terminal=str(terminal).lower()).inc()
        if terminal:
            logger.warning("Outbox event %s exceeded max retries and was marked as failed", event.id)
        return status

    async def reclaim_stalled(self) -> int:
        """Return stalled PROCESSING rows to the retry cycle."""
        async with self._session_factory() as session:
            async with session.begin():
                reclaimed = await self._service(session).reclaim_stalled(
                    self.stall_threshold_minutes
                )
        if reclaimed:
            metrics.outbox_reclaimed.inc(reclaimed)
            logger.warning("Reclaimed %d outbox events stalled in processing", reclaimed)
        return reclaimed

    async def retry_failed_events(self) -> int:
        """Operator recovery: give every FAILED event a fresh retry budget."""
        async with self._session_factory() as session:
            async with session.begin():
                count = await self._service(session).retry_failed_events()
        if count:
            logger.info("Retrying %d failed outbox events", count)
        return count

    async def cleanup_published(self, older_than_days: int) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                deleted = await self._service(session).cleanup_published(older_than_days)
        logger.info("Cleaned up %d published outbox events", deleted)
        return deleted


def _to_domain_event(event: OutboxEvent) -> DomainEvent:
    return DomainEvent(
        name=event.event_name,
        payload=event.payload or {},
        metadata=EventMetadata(**(event.event_metadata or {})),
        outbox_event_id=event.id,
    )
