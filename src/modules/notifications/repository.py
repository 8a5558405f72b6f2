"""Session-bound repositories for notifications and notification batches."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.base import utcnow
from src.models.enums import BatchStatus, NotificationChannel, NotificationStatus
from src.models.notification import Notification
from src.models.notification_batch import NotificationBatch
from src.modules.notifications.constants import METADATA_ERROR


class NotificationRepository:
    """Reads and advances Notification rows created by event handlers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        user_id: str,
        channel: NotificationChannel,
        title: str,
        body: str,
        data: dict | None = None,
        metadata: dict | None = None,
    ) -> Notification:
        """Add a PENDING notification; used by event handlers."""
        notification = Notification(
            user_id=user_id,
            channel=channel,
            title=title,
            body=body,
            data=data,
            notification_metadata=metadata,
            status=NotificationStatus.PENDING,
        )
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def get_for_batch(self, channel: NotificationChannel, limit: int) -> list[Notification]:
        """Oldest PENDING notifications of a channel not yet assigned to a batch."""
        result = await self.session.execute(
            select(Notification)
            .where(
                Notification.channel == channel,
                Notification.status == NotificationStatus.PENDING,
                Notification.batch_id.is_(None),
            )
            .order_by(Notification.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def assign_batch(self, notification_ids: Sequence[uuid.UUID], batch_id: uuid.UUID) -> None:
        await self.session.execute(
            update(Notification)
            .where(Notification.id.in_(notification_ids))
            .values(batch_id=batch_id)
        )
        await self.session.flush()

    async def find_by_ids(self, notification_ids: Sequence[uuid.UUID]) -> list[Notification]:
        """Load notifications, returned in the order of ``notification_ids``."""
        if not notification_ids:
            return []
        result = await self.session.execute(
            select(Notification).where(Notification.id.in_(notification_ids))
        )
        by_id = {n.id: n for n in result.scalars().all()}
        return [by_id[i] for i in notification_ids if i in by_id]

    async def mark_delivered(self, notification_ids: Sequence[uuid.UUID]) -> None:
        if not notification_ids:
            return
        await self.session.execute(
            update(Notification)
            .where(Notification.id.in_(notification_ids))
            .values(status=NotificationStatus.DELIVERED, delivered_at=utcnow())
        )

    async def mark_failed(self, notification: Notification, error: str | None = None) -> None:
        values: dict = {"status": NotificationStatus.FAILED}
        if error is not None:
            values["notification_metadata"] = {
                **(notification.notification_metadata or {}),
                METADATA_ERROR: error,
            }
        await self.session.execute(
            update(Notification).where(Notification.id == notification.id).values(**values)
        )


class BatchRepository:
    """Claims and bookkeeping for NotificationBatch rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_batch(
        self,
        channel: NotificationChannel,
        notification_ids: Sequence[uuid.UUID],
        scheduled_for: datetime | None = None,
    ) -> NotificationBatch:
        batch = NotificationBatch(
            channel=channel,
            status=BatchStatus.PENDING,
            notification_ids=[str(i) for i in notification_ids],
            total_notifications=len(notification_ids),
            processed_count=0,
            success_count=0,
            failure_count=0,
            scheduled_for=scheduled_for,
        )
        self.session.add(batch)
        await self.session.flush()
        return batch

    async def get(self, batch_id: uuid.UUID) -> NotificationBatch | None:
        result = await self.session.execute(
            select(NotificationBatch).where(NotificationBatch.id == batch_id)
        )
        return result.scalar_one_or_none()

    async def find_ready(self, limit: int = 5) -> list[NotificationBatch]:
        """PENDING batches whose scheduled_for is unset or due, oldest first."""
        now = utcnow()
        result = await self.session.execute(
            select(NotificationBatch)
            .where(
                NotificationBatch.status == BatchStatus.PENDING,
                or_(NotificationBatch.scheduled_for.is_(None), NotificationBatch.scheduled_for <= now),
            )
            .order_by(NotificationBatch.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stalled(self, stalled_before: datetime) -> list[NotificationBatch]:
        """PROCESSING batches started at or before ``stalled_before``."""
        result = await self.session.execute(
            select(NotificationBatch)
            .where(
                NotificationBatch.status == BatchStatus.PROCESSING,
                NotificationBatch.started_at <= stalled_before,
            )
            .order_by(NotificationBatch.started_at.asc())
        )
        return list(result.scalars().all())

    async def claim(
        self,
        batch_id: uuid.UUID,
        expected_status: BatchStatus,
        stalled_before: datetime | None = None,
        metadata: dict | None = None,
    ) -> datetime | None:
        """Atomically move a batch into PROCESSING.

        The conditional UPDATE only matches while the batch is still in
        ``expected_status`` (and, for stalled batches, still carries the old
        started_at), so exactly one worker wins. Progress counters restart
        from zero because the whole notification set is delivered again.

        Returns the new started_at, which the winner passes back as its
        ownership token to every later write, or None if the claim lost.
        """
        statement = update(NotificationBatch).where(
            NotificationBatch.id == batch_id,
            NotificationBatch.status == expected_status,
        )
        if stalled_before is not None:
            statement = statement.where(NotificationBatch.started_at <= stalled_before)

        started_at = utcnow()
        values: dict = {
            "status": BatchStatus.PROCESSING,
            "started_at": started_at,
            "completed_at": None,
            "processed_count": 0,
            "success_count": 0,
            "failure_count": 0,
        }
        if metadata is not None:
            values["batch_metadata"] = metadata

        result = await self.session.execute(
            statement.values(**values).execution_options(synchronize_session=False)
        )
        return started_at if result.rowcount == 1 else None

    async def _update_owned(self, batch_id: uuid.UUID, token: datetime, values: dict) -> bool:
        """Update a PROCESSING batch only while its started_at still equals ``token``.

        A stall reclaim rewrites started_at, so a worker whose batch was taken
        over matches no row and gets False back.
        """
        result = await self.session.execute(
            update(NotificationBatch)
            .where(
                NotificationBatch.id == batch_id,
                NotificationBatch.status == BatchStatus.PROCESSING,
                NotificationBatch.started_at == token,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_progress(
        self,
        batch_id: uuid.UUID,
        token: datetime,
        processed_count: int,
        success_count: int,
        failure_count: int,
    ) -> bool:
        return await self._update_owned(batch_id, token, {
            "processed_count": processed_count,
            "success_count": success_count,
            "failure_count": failure_count,
        })

    async def complete(
        self,
        batch_id: uuid.UUID,
        token: datetime,
        processed_count: int,
        success_count: int,
        failure_count: int,
    ) -> bool:
        return await self._update_owned(batch_id, token, {
            "status": BatchStatus.COMPLETED,
            "processed_count": processed_count,
            "success_count": success_count,
            "failure_count": failure_count,
            "completed_at": utcnow(),
        })

    async def fail(self, batch_id: uuid.UUID, token: datetime, metadata: dict) -> bool:
        return await self._update_owned(batch_id, token, {
            "status": BatchStatus.FAILED,
            "completed_at": utcnow(),
            "batch_metadata": metadata,
        })

    async def reschedule(
        self, batch_id: uuid.UUID, token: datetime, scheduled_for: datetime, metadata: dict
    ) -> bool:
        """Return an owned PROCESSING batch to PENDING, not eligible before ``scheduled_for``."""
        return await self._update_owned(batch_id, token, {
            "status": BatchStatus.PENDING,
            "scheduled_for": scheduled_for,
            "started_at": None,
            "batch_metadata": metadata,
        })

    async def cleanup_old_batches(self, older_than_days: int = 30) -> int:
        """Delete COMPLETED batches finished before the retention cutoff."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self.session.execute(
            delete(NotificationBatch).where(
                NotificationBatch.status == BatchStatus.COMPLETED,
                NotificationBatch.completed_at <= cutoff,
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def count_by_status(self) -> dict[str, dict[str, int]]:
        """Batch counts grouped by channel, then status."""
        result = await self.session.execute(
            select(NotificationBatch.channel, NotificationBatch.status, func.count())
            .group_by(NotificationBatch.channel, NotificationBatch.status)
        )
        counts: dict[str, dict[str, int]] = {
            channel.value: {status.value: 0 for status in BatchStatus}
            for channel in NotificationChannel
        }
        for channel, status, count in result.all():
            counts[NotificationChannel(channel).value][BatchStatus(status).value] = count
        return counts


def parse_ids(raw_ids: Iterable[str]) -> list[uuid.UUID]:
    """Convert stored notification id strings back to UUIDs."""
    return [uuid.UUID(str(raw)) for raw in raw_ids]
