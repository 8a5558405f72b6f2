from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from src.config import settings

engine = create_async_engine(
    settings.database_url,
    pool_size=20,
    pool_pre_ping=True,
    pool_recycle=3600,
    max_overflow=5,
    echo=settings.environment == "development",
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_task_session_factory() -> tuple:
    """Build an unpooled engine + session factory for one Celery task run.

    Celery tasks drive coroutines through ``asyncio.run``; pooled asyncpg
    connections are bound to the loop that opened them, so each run gets its
    own engine that the caller disposes when done.
    """
    task_engine = create_async_engine(settings.database_url, poolclass=NullPool)
    factory = async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)
    return task_engine, factory
