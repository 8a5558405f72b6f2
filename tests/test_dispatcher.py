"""Tests for BatchDispatcher: delivery, deferral, stall recovery and cleanup."""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import delete, select, update

from src.database.base import utcnow
from src.exceptions import DeliveryAdapterError
from src.models.enums import BatchStatus, NotificationChannel, NotificationStatus
from src.models.notification import Notification
from src.models.notification_batch import NotificationBatch
from src.modules.notifications.channels import ChannelRegistry
from src.modules.notifications.constants import STALL_LIMIT_ERROR
from src.modules.notifications.dispatcher import (
    COMPLETED,
    DEFERRED,
    FAILED,
    SKIPPED,
    BatchDispatcher,
)
from src.modules.notifications.rate_limiter import InMemoryChannelRateLimiter
from src.modules.notifications.repository import BatchRepository

IN_APP = NotificationChannel.IN_APP


class RecordingAdapter:
    """Accepts every notification except the ones it is told to reject or break on."""

    def __init__(self, reject=(), explode=()):
        self.reject = set(reject)
        self.explode = set(explode)
        self.delivered: list[uuid.UUID] = []

    async def deliver(self, notification):
        self.delivered.append(notification.id)
        if notification.id in self.explode:
            raise DeliveryAdapterError("provider returned 400")
        return notification.id not in self.reject


class BlockingAdapter:
    """Holds every delivery until ``release`` is set."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.delivered: list[uuid.UUID] = []

    async def deliver(self, notification):
        self.delivered.append(notification.id)
        self.entered.set()
        await self.release.wait()
        return True


def _dispatcher(session_factory, adapter=None, limits=None, **kwargs):
    channels = ChannelRegistry({IN_APP: adapter or RecordingAdapter()})
    limiter = InMemoryChannelRateLimiter(limits or {IN_APP: 10000})
    return BatchDispatcher(session_factory, channels, limiter, **kwargs)


def assert_counter_invariants(batch):
    assert batch.processed_count == batch.success_count + batch.failure_count
    assert batch.processed_count <= batch.total_notifications
    if batch.status == BatchStatus.COMPLETED:
        assert batch.processed_count == batch.total_notifications


async def _notifications(session_factory, batch):
    async with session_factory() as session:
        result = await session.execute(
            select(Notification).where(Notification.batch_id == batch.id).order_by(Notification.created_at)
        )
        return list(result.scalars().all())


async def _stall(session_factory, batch, minutes_ago=20, **values):
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(NotificationBatch)
                .where(NotificationBatch.id == batch.id)
                .values(
                    status=BatchStatus.PROCESSING,
                    started_at=utcnow() - timedelta(minutes=minutes_ago),
                    **values,
                )
            )


class TestDispatchDelivery:

    @pytest.mark.asyncio
    async def test_delivers_batch_in_chunks_and_completes(self, session_factory, make_batch, load_batch):
        batch = await make_batch(5)
        adapter = RecordingAdapter()
        dispatcher = _dispatcher(session_factory, adapter, chunk_size=2)

        outcome = await dispatcher.process_batch(batch.id)

        assert outcome == COMPLETED
        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert (stored.processed_count, stored.success_count, stored.failure_count) == (5, 5, 0)
        assert stored.started_at is not None
        assert stored.completed_at is not None
        assert_counter_invariants(stored)
        assert len(adapter.delivered) == 5
        notifications = await _notifications(session_factory, batch)
        assert all(n.status == NotificationStatus.DELIVERED for n in notifications)
        assert all(n.delivered_at is not None for n in notifications)

    @pytest.mark.asyncio
    async def test_rejected_and_broken_deliveries_count_as_failures(
        self, session_factory, make_batch, load_batch
    ):
        batch = await make_batch(4)
        ids = [uuid.UUID(i) for i in batch.notification_ids]
        adapter = RecordingAdapter(reject={ids[0]}, explode={ids[1]})
        dispatcher = _dispatcher(session_factory, adapter)

        assert await dispatcher.process_batch(batch.id) == COMPLETED

        stored = await load_batch(batch.id)
        assert (stored.processed_count, stored.success_count, stored.failure_count) == (4, 2, 2)
        assert_counter_invariants(stored)
        by_id = {n.id: n for n in await _notifications(session_factory, batch)}
        assert by_id[ids[0]].status == NotificationStatus.FAILED
        assert by_id[ids[1]].status == NotificationStatus.FAILED
        assert by_id[ids[1]].notification_metadata["error"] == "provider returned 400"
        assert by_id[ids[2]].status == NotificationStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_missing_notifications_count_as_failures(self, session_factory, make_batch, load_batch):
        batch = await make_batch(3)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(Notification).where(Notification.id == uuid.UUID(batch.notification_ids[0]))
                )
        dispatcher = _dispatcher(session_factory)

        assert await dispatcher.process_batch(batch.id) == COMPLETED

        stored = await load_batch(batch.id)
        assert (stored.processed_count, stored.success_count, stored.failure_count) == (3, 2, 1)
        assert_counter_invariants(stored)

    @pytest.mark.asyncio
    async def test_channel_without_adapter_fails_every_notification(
        self, session_factory, make_batch, load_batch
    ):
        batch = await make_batch(2, NotificationChannel.SMS)
        limiter = InMemoryChannelRateLimiter({NotificationChannel.SMS: 100})
        dispatcher = BatchDispatcher(session_factory, ChannelRegistry(), limiter)

        assert await dispatcher.process_batch(batch.id) == COMPLETED

        stored = await load_batch(batch.id)
        assert (stored.success_count, stored.failure_count) == (0, 2)

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_batch(self, session_factory, make_batch, load_batch):
        batch = await make_batch(2)
        limiter = AsyncMock()
        limiter.check_and_reserve.side_effect = RuntimeError("limiter exploded")
        dispatcher = BatchDispatcher(session_factory, ChannelRegistry({IN_APP: RecordingAdapter()}), limiter)

        assert await dispatcher.process_batch(batch.id) == FAILED

        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.FAILED
        assert stored.batch_metadata["error"] == "limiter exploded"
        assert_counter_invariants(stored)

    @pytest.mark.asyncio
    async def test_a_batch_is_only_claimed_once(self, session_factory, make_batch):
        batch = await make_batch(2)
        adapter = RecordingAdapter()
        dispatcher = _dispatcher(session_factory, adapter)

        assert await dispatcher.process_batch(batch.id) == COMPLETED
        assert await dispatcher.process_batch(batch.id) == SKIPPED
        assert len(adapter.delivered) == 2

    @pytest.mark.asyncio
    async def test_run_once_processes_ready_batches_concurrently(self, session_factory, make_batch, load_batch):
        batches = [await make_batch(2) for _ in range(3)]
        dispatcher = _dispatcher(session_factory, concurrency=5)

        stats = await dispatcher.run_once()

        assert stats == {COMPLETED: 3, DEFERRED: 0, FAILED: 0, SKIPPED: 0}
        for batch in batches:
            assert (await load_batch(batch.id)).status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_once_respects_concurrency_limit(self, session_factory, make_batch):
        for _ in range(3):
            await make_batch(1)
        dispatcher = _dispatcher(session_factory, concurrency=2)

        assert (await dispatcher.run_once())[COMPLETED] == 2
        assert (await dispatcher.run_once())[COMPLETED] == 1


class TestDispatchRateLimit:

    @pytest.mark.asyncio
    async def test_denied_reservation_defers_the_batch(self, session_factory, make_batch, load_batch):
        batch = await make_batch(5)
        adapter = RecordingAdapter()
        dispatcher = _dispatcher(
            session_factory, adapter, limits={IN_APP: 3}, rate_limit_backoff_minutes=5
        )

        assert await dispatcher.process_batch(batch.id) == DEFERRED

        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.PENDING
        assert stored.processed_count == 0
        assert stored.batch_metadata["rate_limited"] == 1
        scheduled = stored.scheduled_for.replace(tzinfo=None)
        expected = (utcnow() + timedelta(minutes=5)).replace(tzinfo=None)
        assert abs((scheduled - expected).total_seconds()) < 60
        assert adapter.delivered == []

        # Not ready again until the backoff has passed
        assert (await dispatcher.run_once())[DEFERRED] == 0
        assert (await load_batch(batch.id)).batch_metadata["rate_limited"] == 1


class TestDispatchStallRecovery:

    @pytest.mark.asyncio
    async def test_stalled_batch_is_resumed_and_completed(self, session_factory, make_batch, load_batch):
        batch = await make_batch(5)
        await _stall(session_factory, batch, processed_count=2, success_count=2)
        dispatcher = _dispatcher(session_factory, stall_threshold_minutes=15)

        stats = await dispatcher.recover_stalled()

        assert stats[COMPLETED] == 1
        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert stored.batch_metadata["stall_recoveries"] == 1
        assert (stored.processed_count, stored.success_count, stored.failure_count) == (5, 5, 0)
        assert_counter_invariants(stored)

    @pytest.mark.asyncio
    async def test_recovery_redelivers_notifications_sent_before_the_stall(
        self, session_factory, make_batch
    ):
        batch = await make_batch(5)
        ids = [uuid.UUID(i) for i in batch.notification_ids]
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Notification)
                    .where(Notification.id.in_(ids[:2]))
                    .values(status=NotificationStatus.DELIVERED, delivered_at=utcnow())
                )
        await _stall(session_factory, batch, processed_count=2, success_count=2)
        adapter = RecordingAdapter()
        dispatcher = _dispatcher(session_factory, adapter)

        await dispatcher.recover_stalled()

        # At-least-once: the two notifications delivered before the stall go out again.
        assert sorted(adapter.delivered) == sorted(ids)
        assert set(ids[:2]) <= set(adapter.delivered)

    @pytest.mark.asyncio
    async def test_recently_started_batch_is_not_recovered(self, session_factory, make_batch, load_batch):
        batch = await make_batch(2)
        await _stall(session_factory, batch, minutes_ago=1)
        adapter = RecordingAdapter()
        dispatcher = _dispatcher(session_factory, adapter, stall_threshold_minutes=15)

        stats = await dispatcher.recover_stalled()

        assert stats == {COMPLETED: 0, DEFERRED: 0, FAILED: 0, SKIPPED: 0}
        assert (await load_batch(batch.id)).status == BatchStatus.PROCESSING
        assert adapter.delivered == []

    @pytest.mark.asyncio
    async def test_slow_worker_stops_after_its_batch_is_reclaimed(
        self, session_factory, make_batch, load_batch
    ):
        batch = await make_batch(4)
        slow_adapter = BlockingAdapter()
        slow = _dispatcher(session_factory, slow_adapter, chunk_size=2)
        recovering_adapter = RecordingAdapter()
        recovering = _dispatcher(
            session_factory, recovering_adapter, chunk_size=2, stall_threshold_minutes=0
        )

        slow_run = asyncio.create_task(slow.process_batch(batch.id))
        await slow_adapter.entered.wait()

        stats = await recovering.recover_stalled()
        assert stats[COMPLETED] == 1
        assert len(recovering_adapter.delivered) == 4

        slow_adapter.release.set()
        assert await slow_run == SKIPPED

        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert (stored.processed_count, stored.success_count, stored.failure_count) == (4, 4, 0)
        assert_counter_invariants(stored)
        # The slow worker never got past its first chunk
        assert len(slow_adapter.delivered) == 2

    @pytest.mark.asyncio
    async def test_reclaimed_batch_rejects_writes_with_the_old_token(
        self, session_factory, make_batch, load_batch
    ):
        batch = await make_batch(2)
        async with session_factory() as session:
            async with session.begin():
                old_token = await BatchRepository(session).claim(batch.id, BatchStatus.PENDING)
        await asyncio.sleep(0.001)
        async with session_factory() as session:
            async with session.begin():
                new_token = await BatchRepository(session).claim(
                    batch.id, BatchStatus.PROCESSING, stalled_before=utcnow()
                )
        assert old_token is not None
        assert new_token is not None

        async with session_factory() as session:
            async with session.begin():
                repo = BatchRepository(session)
                assert not await repo.update_progress(batch.id, old_token, 2, 2, 0)
                assert not await repo.complete(batch.id, old_token, 2, 2, 0)
                assert not await repo.fail(batch.id, old_token, {"error": "stale"})
                assert not await repo.reschedule(batch.id, old_token, utcnow(), {})
                assert await repo.update_progress(batch.id, new_token, 1, 1, 0)

        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.PROCESSING
        assert (stored.processed_count, stored.success_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_batch_over_the_stall_ceiling_is_failed(self, session_factory, make_batch, load_batch):
        batch = await make_batch(2)
        await _stall(session_factory, batch, batch_metadata={"stall_recoveries": 3})
        adapter = RecordingAdapter()
        dispatcher = _dispatcher(session_factory, adapter, max_stall_recoveries=3)

        stats = await dispatcher.recover_stalled()

        assert stats[FAILED] == 1
        stored = await load_batch(batch.id)
        assert stored.status == BatchStatus.FAILED
        assert stored.batch_metadata["error"] == STALL_LIMIT_ERROR
        assert stored.batch_metadata["stall_recoveries"] == 3
        assert adapter.delivered == []


class TestDispatchCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_deletes_only_old_completed_batches(self, session_factory, make_batch, load_batch):
        old = await make_batch(1)
        recent = await make_batch(1)
        pending = await make_batch(1)
        dispatcher = _dispatcher(session_factory)
        await dispatcher.process_batch(old.id)
        await dispatcher.process_batch(recent.id)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(NotificationBatch)
                    .where(NotificationBatch.id == old.id)
                    .values(completed_at=utcnow() - timedelta(days=31))
                )

        assert await dispatcher.cleanup_old_batches(30) == 1

        assert await load_batch(old.id) is None
        assert (await load_batch(recent.id)).status == BatchStatus.COMPLETED
        assert (await load_batch(pending.id)).status == BatchStatus.PENDING
