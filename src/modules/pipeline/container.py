"""Composition root: wires the outbox relay, batcher and dispatcher together."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import Settings, settings
from src.models.enums import NotificationChannel
from src.modules.events.bus import EventBus, EventHandler
from src.modules.events.outbox_relay import OutboxRelay
from src.modules.events.outbox_service import OutboxService
from src.modules.notifications.batcher import NotificationBatcher
from src.modules.notifications.channels import (
    ChannelAdapter,
    ChannelRegistry,
    InAppAdapter,
    InMemoryConnectionRegistry,
    LiveSender,
    LoggingAdapter,
    WebhookAdapter,
)
from src.modules.notifications.dispatcher import BatchDispatcher
from src.modules.notifications.handlers import NOTIFICATION_REQUESTED, NotificationRequestHandler
from src.modules.notifications.rate_limiter import (
    ChannelRateLimiter,
    InMemoryChannelRateLimiter,
    RedisChannelRateLimiter,
)
from src.modules.notifications.repository import BatchRepository
from src.modules.pipeline.scheduler import PeriodicJob, PipelineScheduler

logger = logging.getLogger(__name__)

# Job names, shared with the Celery task locks
RELAY_JOB = "outbox_relay"
BATCHER_JOB = "notification_batcher"
DISPATCHER_JOB = "batch_dispatcher"
STALL_SCAN_JOB = "stall_scan"
CLEANUP_JOB = "cleanup"


@dataclass
class Pipeline:
    """The wired pipeline plus the operator actions that span its parts."""

    session_factory: async_sessionmaker[AsyncSession]
    config: Settings
    bus: EventBus
    relay: OutboxRelay
    batcher: NotificationBatcher
    dispatcher: BatchDispatcher
    channels: ChannelRegistry
    rate_limiter: ChannelRateLimiter
    connections: InMemoryConnectionRegistry
    redis_client: redis.Redis | None = None
    _owns_redis: bool = field(default=False, repr=False)

    async def retry_failed_outbox_events(self) -> int:
        return await self.relay.retry_failed_events()

    async def cleanup_old_batches(self, older_than_days: int | None = None) -> int:
        days = self.config.retention_days if older_than_days is None else older_than_days
        return await self.dispatcher.cleanup_old_batches(days)

    async def cleanup(self, older_than_days: int | None = None) -> dict:
        """Retention sweep over completed batches and published outbox rows."""
        days = self.config.retention_days if older_than_days is None else older_than_days
        return {
            "batches": await self.dispatcher.cleanup_old_batches(days),
            "outbox_events": await self.relay.cleanup_published(days),
        }

    async def recover_stalled(self) -> dict:
        """Stall scan over both the outbox and the batches."""
        return {
            "outbox_events": await self.relay.reclaim_stalled(),
            "batches": await self.dispatcher.recover_stalled(),
        }

    async def stats(self) -> dict:
        async with self.session_factory() as session:
            return {
                "outbox": await OutboxService(session).count_by_status(),
                "batches": await BatchRepository(session).count_by_status(),
            }

    def jobs(self) -> list[PeriodicJob]:
        cfg = self.config
        return [
            PeriodicJob(RELAY_JOB, cfg.outbox_poll_seconds, self.relay.run_once, run_on_start=True),
            PeriodicJob(BATCHER_JOB, cfg.batcher_poll_seconds, self.batcher.run_once),
            PeriodicJob(DISPATCHER_JOB, cfg.dispatcher_poll_seconds, self.dispatcher.run_once),
            PeriodicJob(STALL_SCAN_JOB, cfg.stall_scan_poll_seconds, self.recover_stalled),
            PeriodicJob(CLEANUP_JOB, cfg.cleanup_poll_seconds, self.cleanup),
        ]

    def scheduler(self) -> PipelineScheduler:
        return PipelineScheduler(self.jobs())

    async def aclose(self) -> None:
        await self.channels.aclose()
        if self._owns_redis and self.redis_client is not None:
            await self.redis_client.aclose()


def build_rate_limiter(cfg: Settings, redis_client: redis.Redis | None) -> ChannelRateLimiter:
    if cfg.rate_limiter_backend == "memory":
        return InMemoryChannelRateLimiter(cfg.rate_limits, cfg.rate_limit_window_seconds)
    if cfg.rate_limiter_backend != "redis":
        raise ValueError(f"Unknown rate limiter backend: {cfg.rate_limiter_backend}")
    if redis_client is None:
        raise ValueError("The redis rate limiter needs a redis client")
    return RedisChannelRateLimiter(redis_client, cfg.rate_limits, cfg.rate_limit_window_seconds)


def build_channel_registry(
    cfg: Settings,
    connections: InMemoryConnectionRegistry,
    live_sender: LiveSender | None = None,
) -> ChannelRegistry:
    """In-app goes through the connection registry; other channels use their
    webhook when one is configured and log otherwise."""
    registry = ChannelRegistry({NotificationChannel.IN_APP: InAppAdapter(connections, live_sender)})
    webhooks = {
        NotificationChannel.PUSH: cfg.push_webhook_url,
        NotificationChannel.EMAIL: cfg.email_webhook_url,
        NotificationChannel.SMS: cfg.sms_webhook_url,
    }
    for channel, url in webhooks.items():
        adapter: ChannelAdapter
        if url:
            adapter = WebhookAdapter(
                channel,
                url,
                api_key=cfg.channel_webhook_api_key,
                timeout=cfg.channel_webhook_timeout_seconds,
            )
        else:
            adapter = LoggingAdapter(channel)
        registry.register(channel, adapter)
    return registry


def build_pipeline(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    cfg: Settings = settings,
    redis_client: redis.Redis | None = None,
    handlers: Iterable[tuple[str, EventHandler]] = (),
    adapters: Mapping[NotificationChannel, ChannelAdapter] | None = None,
    rate_limiter: ChannelRateLimiter | None = None,
    live_sender: LiveSender | None = None,
) -> Pipeline:
    """Build every pipeline component from settings.

    ``adapters`` and ``rate_limiter`` override the ones derived from
    settings. ``handlers`` are subscribed on the bus after the built-in
    ``notification.requested`` handler.
    """
    if session_factory is None:
        from src.database.engine import async_session

        session_factory = async_session

    owns_redis = False
    if rate_limiter is None and cfg.rate_limiter_backend == "redis" and redis_client is None:
        redis_client = redis.from_url(cfg.redis_url, decode_responses=True)
        owns_redis = True
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(cfg, redis_client)

    connections = InMemoryConnectionRegistry()
    channels = build_channel_registry(cfg, connections, live_sender)
    for channel, adapter in (adapters or {}).items():
        channels.register(channel, adapter)

    bus = EventBus()
    bus.subscribe(NOTIFICATION_REQUESTED, NotificationRequestHandler(session_factory))
    for pattern, handler in handlers:
        bus.subscribe(pattern, handler)

    relay = OutboxRelay(
        session_factory,
        bus,
        batch_size=cfg.outbox_batch_size,
        max_retries=cfg.outbox_max_retries,
        stall_threshold_minutes=cfg.outbox_stall_threshold_minutes,
    )
    batcher = NotificationBatcher(session_factory, cfg.batch_sizes)
    dispatcher = BatchDispatcher(
        session_factory,
        channels,
        rate_limiter,
        concurrency=cfg.dispatch_concurrency,
        chunk_size=cfg.delivery_chunk_size,
        delivery_concurrency=cfg.delivery_concurrency,
        stall_threshold_minutes=cfg.stall_threshold_minutes,
        max_stall_recoveries=cfg.max_stall_recoveries,
        rate_limit_backoff_minutes=cfg.rate_limit_backoff_minutes,
    )

    logger.debug("Built pipeline with %s rate limiter", type(rate_limiter).__name__)
    return Pipeline(
        session_factory=session_factory,
        config=cfg,
        bus=bus,
        relay=relay,
        batcher=batcher,
        dispatcher=dispatcher,
        channels=channels,
        rate_limiter=rate_limiter,
        connections=connections,
        redis_client=redis_client,
        _owns_redis=owns_redis,
    )
