"""In-process periodic jobs for running the pipeline without Celery beat."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class PeriodicJob:
    """Calls ``func`` every ``interval_seconds`` seconds.

    Ticks are started on schedule even when the previous one is still
    running; such a tick finds the job's lock held, logs and returns. At most
    one invocation of ``func`` is therefore in flight per job.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: JobFunc,
        run_on_start: bool = False,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self._func = func
        self._lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self.skipped = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self) -> Any | None:
        """Run one tick now. Returns ``func``'s result, or None if skipped or failed."""
        if self._lock.locked():
            self.skipped += 1
            logger.warning("Skipping %s tick: previous run still in progress", self.name)
            return None

        async with self._lock:
            try:
                result = await self._func()
            except Exception:
                logger.exception("Periodic job %s failed", self.name)
                return None

        logger.info("%s complete: %s", self.name, result)
        return result

    def start(self) -> None:
        if self.started:
            return
        self._loop_task = asyncio.create_task(self._run_forever(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        """Stop scheduling and wait for an in-flight tick to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)

    async def _run_forever(self) -> None:
        if not self.run_on_start:
            await asyncio.sleep(self.interval_seconds)
        while True:
            tick = asyncio.create_task(self.run_once(), name=f"tick:{self.name}")
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.interval_seconds)


class PipelineScheduler:
    """Owns the pipeline's periodic jobs and their start/stop lifecycle."""

    def __init__(self, jobs: Iterable[PeriodicJob]) -> None:
        self.jobs = {job.name: job for job in jobs}

    def get(self, name: str) -> PeriodicJob:
        return self.jobs[name]

    def start(self) -> None:
        for job in self.jobs.values():
            job.start()
        logger.info("Started pipeline jobs: %s", ", ".join(self.jobs))

    async def stop(self) -> None:
        await asyncio.gather(*(job.stop() for job in self.jobs.values()))
        logger.info("Stopped pipeline jobs")
