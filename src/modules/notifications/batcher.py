"""NotificationBatcher: groups pending notifications into per-channel batches."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.enums import NotificationChannel
from src.models.notification_batch import NotificationBatch
from src.modules.notifications.constants import DEFAULT_BATCH_SIZE, DEFAULT_BATCH_SIZES
from src.modules.notifications.repository import BatchRepository, NotificationRepository
from src.modules.pipeline import metrics

logger = logging.getLogger(__name__)


class NotificationBatcher:
    """Creates at most one batch per channel per tick.

    The selected notifications are locked, stamped with the new batch id and
    committed together with the batch, so a notification lands in exactly
    one batch even with several batchers running.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_sizes: Mapping[NotificationChannel, int] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.batch_sizes = dict(DEFAULT_BATCH_SIZES if batch_sizes is None else batch_sizes)

    async def run_once(self) -> dict:
        """Returns dict with 'batches' and 'notifications' counts and 'errors'."""
        stats = {"batches": 0, "notifications": 0, "errors": 0}
        for channel in NotificationChannel:
            try:
                batch = await self.create_batch_for_channel(channel)
            except Exception:
                logger.exception("Error creating batch for %s", channel.value)
                stats["errors"] += 1
                continue
            if batch is not None:
                stats["batches"] += 1
                stats["notifications"] += batch.total_notifications
        return stats

    async def create_batch_for_channel(self, channel: NotificationChannel) -> NotificationBatch | None:
        batch_size = self.batch_sizes.get(channel, DEFAULT_BATCH_SIZE)

        async with self._session_factory() as session:
            async with session.begin():
                notifications = await NotificationRepository(session).get_for_batch(channel, batch_size)
                if not notifications:
                    return None

                notification_ids = [n.id for n in notifications]
                batch = await BatchRepository(session).create_batch(channel, notification_ids)
                await NotificationRepository(session).assign_batch(notification_ids, batch.id)

        metrics.batches_created.labels(channel=channel.value).inc()
        logger.info("Created batch %s for %d %s notifications", batch.id, len(notification_ids), channel.value)
        return batch
