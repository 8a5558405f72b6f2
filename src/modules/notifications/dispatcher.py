"""BatchDispatcher: delivers notification batches under channel rate limits."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.base import utcnow
from src.exceptions import BatchOwnershipLost, RateLimitExceeded
from src.models.enums import BatchStatus
from src.models.notification import Notification
from src.models.notification_batch import NotificationBatch
from src.modules.notifications.channels import ChannelRegistry
from src.modules.notifications.constants import (
    METADATA_ERROR,
    METADATA_RATE_LIMITED,
    METADATA_STALL_RECOVERIES,
    STALL_LIMIT_ERROR,
)
from src.modules.notifications.rate_limiter import ChannelRateLimiter
from src.modules.notifications.repository import (
    BatchRepository,
    NotificationRepository,
    parse_ids,
)
from src.modules.pipeline import metrics

logger = logging.getLogger(__name__)

# Outcomes returned by process_batch
COMPLETED = "completed"
DEFERRED = "deferred"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class DeliveryResult:
    notification: Notification
    success: bool
    error: str | None = None


class BatchDispatcher:
    """Claims ready batches and delivers their notifications chunk by chunk.

    Progress counters are checkpointed after every chunk together with the
    notification statuses of that chunk, so a crash loses at most one chunk of
    bookkeeping. A stalled batch is re-run from the start: notifications
    delivered before the stall are delivered again (at-least-once).

    The started_at written by a claim is the worker's ownership token. Every
    later write for the batch matches on it, so once the stall scan hands the
    batch to a new worker the old one stops at its next checkpoint.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channels: ChannelRegistry,
        rate_limiter: ChannelRateLimiter,
        concurrency: int = 5,
        chunk_size: int = 100,
        delivery_concurrency: int = 20,
        stall_threshold_minutes: int = 15,
        max_stall_recoveries: int = 3,
        rate_limit_backoff_minutes: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._channels = channels
        self._rate_limiter = rate_limiter
        self.concurrency = concurrency
        self.chunk_size = chunk_size
        self.delivery_concurrency = delivery_concurrency
        self.stall_threshold_minutes = stall_threshold_minutes
        self.max_stall_recoveries = max_stall_recoveries
        self.rate_limit_backoff_minutes = rate_limit_backoff_minutes

    # ── Periodic entry points ────────────────────────────────────────────

    async def run_once(self) -> dict:
        """Process up to ``concurrency`` ready batches concurrently."""
        async with self._session_factory() as session:
            batches = await BatchRepository(session).find_ready(self.concurrency)

        outcomes = await asyncio.gather(
            *(self.process_batch(batch.id, BatchStatus.PENDING) for batch in batches)
        )
        return _tally(outcomes)

    async def recover_stalled(self) -> dict:
        """Resubmit PROCESSING batches whose worker appears to have died."""
        stalled_before = utcnow() - timedelta(minutes=self.stall_threshold_minutes)
        async with self._session_factory() as session:
            batches = await BatchRepository(session).find_stalled(stalled_before)

        outcomes = []
        for batch in batches:
            recoveries = (batch.batch_metadata or {}).get(METADATA_STALL_RECOVERIES, 0)
            if recoveries >= self.max_stall_recoveries:
                outcomes.append(await self._abandon(batch, stalled_before))
                continue

            logger.warning("Found stalled batch %s, resuming processing", batch.id)
            metrics.batches_recovered.labels(channel=batch.channel.value).inc()
            outcomes.append(
                await self.process_batch(
                    batch.id,
                    BatchStatus.PROCESSING,
                    stalled_before=stalled_before,
                    metadata={
                        **(batch.batch_metadata or {}),
                        METADATA_STALL_RECOVERIES: recoveries + 1,
                    },
                )
            )
        return _tally(outcomes)

    async def cleanup_old_batches(self, older_than_days: int = 30) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                deleted = await BatchRepository(session).cleanup_old_batches(older_than_days)
        logger.info("Cleaned up %d old notification batches", deleted)
        return deleted

    # ── Batch processing ─────────────────────────────────────────────────

    async def process_batch(
        self,
        batch_id: uuid.UUID,
        expected_status: BatchStatus = BatchStatus.PENDING,
        stalled_before: datetime | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Claim and deliver one batch. Never raises; returns the outcome."""
        claimed = await self._claim(batch_id, expected_status, stalled_before, metadata)
        if claimed is None:
            logger.debug("Batch %s already claimed by another worker", batch_id)
            return SKIPPED

        batch, token = claimed
        try:
            return await self._deliver_batch(batch, token)
        except BatchOwnershipLost:
            logger.warning("Batch %s was reclaimed while still in progress, stopping", batch.id)
            return SKIPPED
        except Exception as exc:
            logger.exception("Error processing batch %s", batch.id)
            return FAILED if await self._fail(batch, token, str(exc)) else SKIPPED

    async def _claim(
        self,
        batch_id: uuid.UUID,
        expected_status: BatchStatus,
        stalled_before: datetime | None,
        metadata: dict | None,
    ) -> tuple[NotificationBatch, datetime] | None:
        async with self._session_factory() as session:
            async with session.begin():
                repo = BatchRepository(session)
                token = await repo.claim(batch_id, expected_status, stalled_before, metadata)
                if token is None:
                    return None
                return await repo.get(batch_id), token

    async def _deliver_batch(self, batch: NotificationBatch, token: datetime) -> str:
        notification_ids = parse_ids(batch.notification_ids or [])
        async with self._session_factory() as session:
            notifications = await NotificationRepository(session).find_by_ids(notification_ids)

        try:
            await self._reserve(batch, len(notifications))
        except RateLimitExceeded as exc:
            await self._defer(batch, token, exc)
            return DEFERRED

        # Referenced rows that no longer exist count as failed deliveries.
        missing = len(notification_ids) - len(notifications)
        if missing:
            logger.warning("Batch %s references %d missing notifications", batch.id, missing)
        processed = failure = missing
        success = 0

        for start in range(0, len(notifications), self.chunk_size):
            chunk = notifications[start:start + self.chunk_size]
            results = await self._deliver_chunk(chunk)

            processed += len(results)
            success += sum(1 for r in results if r.success)
            failure += sum(1 for r in results if not r.success)
            await self._checkpoint(batch.id, token, results, processed, success, failure)

        async with self._session_factory() as session:
            async with session.begin():
                repo = BatchRepository(session)
                if not await repo.complete(batch.id, token, processed, success, failure):
                    raise BatchOwnershipLost(batch.id)

        metrics.batches_finished.labels(channel=batch.channel.value, status=COMPLETED).inc()
        logger.info("Completed batch %s: %d successful, %d failed", batch.id, success, failure)
        return COMPLETED

    async def _reserve(self, batch: NotificationBatch, count: int) -> None:
        if not await self._rate_limiter.check_and_reserve(batch.channel, count):
            raise RateLimitExceeded(batch.channel.value, count)

    async def _defer(self, batch: NotificationBatch, token: datetime, exc: RateLimitExceeded) -> None:
        scheduled_for = utcnow() + timedelta(minutes=self.rate_limit_backoff_minutes)
        metadata = dict(batch.batch_metadata or {})
        metadata[METADATA_RATE_LIMITED] = metadata.get(METADATA_RATE_LIMITED, 0) + 1

        async with self._session_factory() as session:
            async with session.begin():
                repo = BatchRepository(session)
                if not await repo.reschedule(batch.id, token, scheduled_for, metadata):
                    raise BatchOwnershipLost(batch.id)

        metrics.batches_finished.labels(channel=batch.channel.value, status=DEFERRED).inc()
        logger.warning("%s, rescheduled batch %s for %s", exc, batch.id, scheduled_for.isoformat())

    async def _deliver_chunk(self, chunk: list[Notification]) -> list[DeliveryResult]:
        semaphore = asyncio.Semaphore(self.delivery_concurrency)

        async def _bounded(notification: Notification) -> DeliveryResult:
            async with semaphore:
                return await self._deliver(notification)

        return list(await asyncio.gather(*(_bounded(n) for n in chunk)))

    async def _deliver(self, notification: Notification) -> DeliveryResult:
        try:
            success = await self._channels.deliver(notification)
        except Exception as exc:
            logger.error("Error delivering notification %s: %s", notification.id, exc)
            result = DeliveryResult(notification, False, str(exc))
        else:
            result = DeliveryResult(notification, success)

        outcome = "delivered" if result.success else "failed"
        metrics.notifications_delivered.labels(channel=notification.channel.value, outcome=outcome).inc()
        return result

    async def _checkpoint(
        self,
        batch_id: uuid.UUID,
        token: datetime,
        results: list[DeliveryResult],
        processed: int,
        success: int,
        failure: int,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                # Locks the batch row until commit, so a reclaim waits for this chunk.
                if not await BatchRepository(session).update_progress(
                    batch_id, token, processed, success, failure
                ):
                    raise BatchOwnershipLost(batch_id)
                notifications = NotificationRepository(session)
                await notifications.mark_delivered([r.notification.id for r in results if r.success])
                for result in results:
                    if not result.success:
                        await notifications.mark_failed(result.notification, result.error)

    async def _fail(self, batch: NotificationBatch, token: datetime, error: str) -> bool:
        metadata = {**(batch.batch_metadata or {}), METADATA_ERROR: error}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    failed = await BatchRepository(session).fail(batch.id, token, metadata)
        except Exception:
            logger.exception("Could not mark batch %s as failed", batch.id)
            return False
        if not failed:
            logger.warning("Batch %s was reclaimed before it could be marked failed", batch.id)
            return False
        metrics.batches_finished.labels(channel=batch.channel.value, status=FAILED).inc()
        return True

    async def _abandon(self, batch: NotificationBatch, stalled_before: datetime) -> str:
        """Fail a batch that has stalled more often than allowed."""
        async with self._session_factory() as session:
            async with session.begin():
                # Claiming first keeps a live worker's batch from being failed.
                token = await BatchRepository(session).claim(
                    batch.id, BatchStatus.PROCESSING, stalled_before
                )
        if token is None:
            return SKIPPED
        logger.error("Batch %s stalled %d times, giving up", batch.id, self.max_stall_recoveries)
        return FAILED if await self._fail(batch, token, STALL_LIMIT_ERROR) else SKIPPED


def _tally(outcomes: list[str]) -> dict:
    stats = {COMPLETED: 0, DEFERRED: 0, FAILED: 0, SKIPPED: 0}
    for outcome in outcomes:
        stats[outcome] += 1
    return stats
