"""Standalone worker: runs the pipeline's periodic jobs without Celery.

    python -m src.worker
"""

import asyncio
import logging
import signal

from src.config import settings
from src.database.engine import engine
from src.modules.pipeline.container import build_pipeline

logger = logging.getLogger(__name__)


async def run() -> None:
    pipeline = build_pipeline()
    scheduler = pipeline.scheduler()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down pipeline worker")
        await scheduler.stop()
        await pipeline.aclose()
        await engine.dispose()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
