"""Pytest fixtures for the notification pipeline tests.

Every test gets its own SQLite file so that the relay, batcher and
dispatcher can open as many sessions as they like against one database.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.database.base import Base
from src.models.enums import NotificationChannel
from src.models.notification import Notification
from src.models.notification_batch import NotificationBatch
from src.modules.notifications.repository import BatchRepository, NotificationRepository


@pytest_asyncio.fixture
async def async_test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(async_test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def make_notifications(
    session_factory,
) -> Callable[..., Awaitable[list[Notification]]]:
    """Factory fixture: commit ``count`` PENDING notifications for a channel."""

    async def _make(
        count: int,
        channel: NotificationChannel = NotificationChannel.IN_APP,
        user_id: str = "user-1",
    ) -> list[Notification]:
        async with session_factory() as session:
            async with session.begin():
                repo = NotificationRepository(session)
                return [
                    await repo.create(
                        user_id=user_id,
                        channel=channel,
                        title=f"Notification {i}",
                        body=f"Body {i}",
                    )
                    for i in range(count)
                ]

    return _make


@pytest_asyncio.fixture
async def make_batch(
    session_factory, make_notifications
) -> Callable[..., Awaitable[NotificationBatch]]:
    """Factory fixture: commit a PENDING batch over fresh notifications."""

    async def _make(
        count: int,
        channel: NotificationChannel = NotificationChannel.IN_APP,
    ) -> NotificationBatch:
        notifications = await make_notifications(count, channel)
        ids = [n.id for n in notifications]
        async with session_factory() as session:
            async with session.begin():
                batch = await BatchRepository(session).create_batch(channel, ids)
                await NotificationRepository(session).assign_batch(ids, batch.id)
        return batch

    return _make


@pytest_asyncio.fixture
async def load_batch(session_factory) -> Callable[..., Awaitable[NotificationBatch]]:
    async def _load(batch_id) -> NotificationBatch:
        async with session_factory() as session:
            return await BatchRepository(session).get(batch_id)

    return _load
