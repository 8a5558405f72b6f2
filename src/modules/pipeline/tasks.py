"""Celery tasks that run one pipeline tick per beat trigger."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis
from redis.exceptions import LockError

from celery_app import celery
from src.config import settings
from src.database.engine import create_task_session_factory
from src.modules.pipeline.container import (
    BATCHER_JOB,
    CLEANUP_JOB,
    DISPATCHER_JOB,
    RELAY_JOB,
    STALL_SCAN_JOB,
    Pipeline,
    build_pipeline,
)

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock:pipeline"
# Upper bound on one tick; a crashed worker's lock frees itself after this
LOCK_TIMEOUT_SECONDS = 15 * 60


async def _run_job(job: str, func: Callable[[Pipeline], Awaitable[Any]]) -> dict:
    """Run ``func`` against a freshly built pipeline under the job's Redis lock.

    A tick that cannot take the lock returns ``{"skipped": True}`` instead of
    overlapping with a tick still running on another worker.
    """
    engine, session_factory = create_task_session_factory()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    pipeline = build_pipeline(session_factory, redis_client=client)
    lock = client.lock(f"{LOCK_KEY_PREFIX}:{job}", timeout=LOCK_TIMEOUT_SECONDS, blocking=False)

    try:
        if not await lock.acquire():
            logger.info("%s already running elsewhere, skipping tick", job)
            return {"skipped": True}
        try:
            return await func(pipeline)
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Lock for %s expired before the tick finished", job)
    finally:
        await pipeline.aclose()
        await client.aclose()
        await engine.dispose()


async def _retry_failed(pipeline: Pipeline) -> dict:
    return {"retried": await pipeline.retry_failed_outbox_events()}


@celery.task(name="src.modules.pipeline.tasks.relay_outbox")
def relay_outbox():
    """Publish due outbox events onto the event bus."""
    stats = asyncio.run(_run_job(RELAY_JOB, lambda p: p.relay.run_once()))
    logger.info("relay_outbox complete: %s", stats)
    return stats


@celery.task(name="src.modules.pipeline.tasks.create_batches")
def create_batches():
    """Group pending notifications into per-channel batches."""
    stats = asyncio.run(_run_job(BATCHER_JOB, lambda p: p.batcher.run_once()))
    logger.info("create_batches complete: %s", stats)
    return stats


@celery.task(name="src.modules.pipeline.tasks.dispatch_batches")
def dispatch_batches():
    """Deliver ready batches under the channel rate limits."""
    stats = asyncio.run(_run_job(DISPATCHER_JOB, lambda p: p.dispatcher.run_once()))
    logger.info("dispatch_batches complete: %s", stats)
    return stats


@celery.task(name="src.modules.pipeline.tasks.recover_stalled")
def recover_stalled():
    """Reclaim stalled outbox rows and resume stalled batches."""
    stats = asyncio.run(_run_job(STALL_SCAN_JOB, lambda p: p.recover_stalled()))
    logger.info("recover_stalled complete: %s", stats)
    return stats


@celery.task(name="src.modules.pipeline.tasks.cleanup_pipeline")
def cleanup_pipeline():
    """Daily retention sweep of completed batches and published outbox rows."""
    stats = asyncio.run(_run_job(CLEANUP_JOB, lambda p: p.cleanup()))
    logger.info("cleanup_pipeline complete: %s", stats)
    return stats


@celery.task(name="src.modules.pipeline.tasks.retry_failed_outbox_events")
def retry_failed_outbox_events():
    """Operator action: move FAILED outbox events back to PENDING."""
    stats = asyncio.run(_run_job("retry_failed", _retry_failed))
    logger.info("retry_failed_outbox_events complete: %s", stats)
    return stats
