"""OutboxService: session-bound access to the outbox_events table."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database.base import utcnow
from src.models.enums import OutboxStatus
from src.models.outbox_event import OutboxEvent
from src.modules.events.constants import (
    CORRELATION_ID_KEY,
    STALLED_OUTBOX_ERROR,
    TIMESTAMP_KEY,
)
from src.modules.events.schemas import DomainEvent


def _enrich_metadata(metadata: dict | None) -> dict:
    enriched = dict(metadata or {})
    enriched.setdefault(CORRELATION_ID_KEY, str(uuid.uuid4()))
    enriched.setdefault(TIMESTAMP_KEY, utcnow().isoformat())
    return enriched


class OutboxService:
    """Manages the outbox lifecycle (append, claim, mark, recover).

    The service never commits: appends ride on the caller's transaction and
    the relay decides where its own transaction boundaries are.
    """

    def __init__(self, session: AsyncSession, max_retries: int | None = None) -> None:
        self.session = session
        self.max_retries = settings.outbox_max_retries if max_retries is None else max_retries

    # ── Producer side ────────────────────────────────────────────────────

    async def append(
        self,
        event_name: str,
        payload: dict,
        metadata: dict | None = None,
        scheduled_for: datetime | None = None,
    ) -> OutboxEvent:
        """Add a PENDING event to the caller's transaction."""
        event = OutboxEvent(
            event_name=event_name,
            payload=payload,
            event_metadata=_enrich_metadata(metadata),
            status=OutboxStatus.PENDING,
            retry_count=0,
            scheduled_for=scheduled_for,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def append_many(
        self, events: Iterable[DomainEvent], scheduled_for: datetime | None = None
    ) -> list[OutboxEvent]:
        """Add several events in one flush, preserving their order."""
        rows = [
            OutboxEvent(
                event_name=event.name,
                payload=event.payload,
                event_metadata=event.metadata.model_dump(mode="json", exclude_none=True),
                status=OutboxStatus.PENDING,
                retry_count=0,
                scheduled_for=scheduled_for,
            )
            for event in events
        ]
        self.session.add_all(rows)
        await self.session.flush()
        return rows

    # ── Relay side ───────────────────────────────────────────────────────

    async def claim_due(
        self, batch_size: int, exclude_ids: Iterable[uuid.UUID] = ()
    ) -> list[OutboxEvent]:
        """Lock up to ``batch_size`` due PENDING rows and mark them PROCESSING.

        Uses SELECT ... FOR UPDATE SKIP LOCKED so concurrent relays never
        claim the same row. The caller commits to release the locks.
        """
        now = utcnow()
        statement = (
            select(OutboxEvent)
            .where(
                OutboxEvent.status == OutboxStatus.PENDING,
                or_(OutboxEvent.scheduled_for.is_(None), OutboxEvent.scheduled_for <= now),
            )
            .order_by(OutboxEvent.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        excluded = list(exclude_ids)
        if excluded:
            statement = statement.where(OutboxEvent.id.not_in(excluded))

        result = await self.session.execute(statement)
        events = list(result.scalars().all())
        for event in events:
            event.status = OutboxStatus.PROCESSING
            event.claimed_at = now
        await self.session.flush()
        return events

    async def mark_published(self, event_id: uuid.UUID) -> None:
        """Set event status to PUBLISHED and record processed_at."""
        statement = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .values(
                status=OutboxStatus.PUBLISHED,
                processed_at=utcnow(),
                error_message=None,
            )
        )
        await self.session.execute(statement)
        await self.session.flush()

    async def record_failure(self, event_id: uuid.UUID, error: str) -> OutboxStatus | None:
        """Apply retry bookkeeping to a PROCESSING event that failed to publish.

        While retry_count < max_retries the count is incremented and the event
        goes back to PENDING; otherwise it becomes FAILED with retry_count
        left at max_retries. Returns the new status, or None if the event was
        no longer PROCESSING.
        """
        statement = select(OutboxEvent).where(
            OutboxEvent.id == event_id,
            OutboxEvent.status == OutboxStatus.PROCESSING,
        )
        result = await self.session.execute(statement)
        event = result.scalar_one_or_none()
        if event is None:
            return None

        if event.retry_count < self.max_retries:
            values = {
                "status": OutboxStatus.PENDING,
                "retry_count": event.retry_count + 1,
                "error_message": error,
                "claimed_at": None,
            }
        else:
            values = {"status": OutboxStatus.FAILED, "error_message": error}

        await self.session.execute(
            update(OutboxEvent)
            .where(
                OutboxEvent.id == event_id,
                OutboxEvent.status == OutboxStatus.PROCESSING,
            )
            .values(**values)
        )
        await self.session.flush()
        return values["status"]

    async def find_stalled(self, threshold_minutes: int) -> list[uuid.UUID]:
        """Return ids of PROCESSING rows claimed longer ago than the threshold."""
        cutoff = utcnow() - timedelta(minutes=threshold_minutes)
        result = await self.session.execute(
            select(OutboxEvent.id)
            .where(
                OutboxEvent.status == OutboxStatus.PROCESSING,
                or_(OutboxEvent.claimed_at.is_(None), OutboxEvent.claimed_at <= cutoff),
            )
            .order_by(OutboxEvent.claimed_at.asc())
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def reclaim_stalled(self, threshold_minutes: int) -> int:
        """Count stalled PROCESSING rows as failed attempts.

        A stalled row goes through the normal retry bookkeeping, so a row that
        keeps wedging its relay ends up FAILED instead of cycling forever.
        """
        reclaimed = 0
        for event_id in await self.find_stalled(threshold_minutes):
            if await self.record_failure(event_id, STALLED_OUTBOX_ERROR) is not None:
                reclaimed += 1
        return reclaimed

    # ── Operator side ────────────────────────────────────────────────────

    async def retry_failed_events(self) -> int:
        """Reset every FAILED event to PENDING with a fresh retry budget."""
        result = await self.session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.FAILED)
            .values(
                status=OutboxStatus.PENDING,
                retry_count=0,
                error_message=None,
                claimed_at=None,
            )
        )
        await self.session.flush()
        return result.rowcount or 0

    async def cleanup_published(self, older_than_days: int) -> int:
        """Delete PUBLISHED events processed before the retention cutoff."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self.session.execute(
            delete(OutboxEvent).where(
                OutboxEvent.status == OutboxStatus.PUBLISHED,
                OutboxEvent.processed_at <= cutoff,
            ).execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount or 0

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(OutboxEvent.status, func.count()).group_by(OutboxEvent.status)
        )
        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in result.all():
            counts[OutboxStatus(status).value] = count
        return counts


async def append_to_outbox(
    session: AsyncSession,
    event_name: str,
    payload: dict,
    metadata: dict | None = None,
    scheduled_for: datetime | None = None,
) -> OutboxEvent:
    """Record a domain event inside the caller's business transaction.

    Nothing is committed here: the event becomes visible to the relay only
    when the caller commits, and disappears with a rollback.
    """
    return await OutboxService(session).append(
        event_name, payload, metadata=metadata, scheduled_for=scheduled_for
    )
