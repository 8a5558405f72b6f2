"""Per-channel fixed-window rate limiting for notification dispatch."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from typing import Protocol

import redis.asyncio as redis

from src.models.enums import NotificationChannel
from src.modules.notifications.constants import (
    DEFAULT_RATE_LIMIT,
    DEFAULT_RATE_LIMITS,
    RATE_LIMIT_KEY_PREFIX,
)
from src.modules.pipeline import metrics

logger = logging.getLogger(__name__)

# Reserve ARGV[1] units against limit ARGV[2] only if they all fit. The TTL
# is set when the key has none, i.e. on the first increment of a window.
CHECK_AND_RESERVE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local requested = tonumber(ARGV[1])
if current + requested > tonumber(ARGV[2]) then
    return 0
end
redis.call('INCRBY', KEYS[1], requested)
if redis.call('TTL', KEYS[1]) < 0 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[3]))
end
return 1
"""


class ChannelRateLimiter(Protocol):
    async def check_and_reserve(self, channel: NotificationChannel, count: int) -> bool: ...


class _LimitTable:
    def __init__(self, limits: Mapping[NotificationChannel, int] | None, window_seconds: int) -> None:
        self.limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self.window_seconds = window_seconds

    def limit_for(self, channel: NotificationChannel) -> int:
        return self.limits.get(channel, DEFAULT_RATE_LIMIT)

    def _denied(self, channel: NotificationChannel, count: int) -> bool:
        metrics.rate_limiter_rejections.labels(channel=channel.value).inc()
        logger.info(
            "Rate limit denied %d %s deliveries (limit %d per %ds)",
            count, channel.value, self.limit_for(channel), self.window_seconds,
        )
        return False


class RedisChannelRateLimiter(_LimitTable):
    """Shared fixed-window counter in Redis.

    The read-compare-increment runs as one Lua script, so reservations stay
    correct with any number of dispatcher processes.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        limits: Mapping[NotificationChannel, int] | None = None,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(limits, window_seconds)
        self._redis = redis_client
        self._script = redis_client.register_script(CHECK_AND_RESERVE_SCRIPT)

    @staticmethod
    def key_for(channel: NotificationChannel) -> str:
        return f"{RATE_LIMIT_KEY_PREFIX}:{channel.value}"

    async def check_and_reserve(self, channel: NotificationChannel, count: int) -> bool:
        """Reserve ``count`` deliveries in the current window if they fit.

        A Redis failure is treated as a denial: the batch is deferred rather
        than sent past a limit that could not be checked.
        """
        limit = self.limit_for(channel)
        if count > limit:
            return self._denied(channel, count)
        try:
            allowed = await self._script(
                keys=[self.key_for(channel)],
                args=[count, limit, self.window_seconds],
            )
        except redis.RedisError:
            logger.exception("Rate limiter unavailable for channel %s", channel.value)
            return self._denied(channel, count)

        if int(allowed) != 1:
            return self._denied(channel, count)
        return True

    async def current(self, channel: NotificationChannel) -> int:
        value = await self._redis.get(self.key_for(channel))
        return int(value) if value else 0


class InMemoryChannelRateLimiter(_LimitTable):
    """Process-local fixed-window counter.

    Only correct while a single dispatcher process runs; use
    :class:`RedisChannelRateLimiter` to scale dispatchers horizontally.
    """

    def __init__(
        self,
        limits: Mapping[NotificationChannel, int] | None = None,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(limits, window_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        # channel -> (window start, reserved count)
        self._windows: dict[NotificationChannel, tuple[float, int]] = {}

    async def check_and_reserve(self, channel: NotificationChannel, count: int) -> bool:
        limit = self.limit_for(channel)
        async with self._lock:
            now = self._clock()
            started, current = self._windows.get(channel, (now, 0))
            if now - started >= self.window_seconds:
                started, current = now, 0

            if current + count > limit:
                return self._denied(channel, count)

            if current == 0:
                started = now
            self._windows[channel] = (started, current + count)
            return True

    async def current(self, channel: NotificationChannel) -> int:
        started, count = self._windows.get(channel, (0.0, 0))
        if self._clock() - started >= self.window_seconds:
            return 0
        return count
