"""Run the connectors and the aggregator without the HTTP surface."""

from __future__ import annotations

import asyncio
import logging
import signal

from .cache import MarketCache
from .errors import AggregatorError
from .logging_config import configure_logging
from .pipeline import Pipeline
from .settings import settings

logger = logging.getLogger("crypto_aggregator")


async def main() -> int:
    configure_logging(settings.log_level)
    pipeline = Pipeline(settings, MarketCache.from_settings(settings.redis))
    try:
        await pipeline.start()
    except (AggregatorError, RuntimeError) as exc:
        logger.error("Cannot start: %s", exc)
        await pipeline.stop()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this event loop")

    await stop.wait()
    logger.info("Shutdown requested")
    await pipeline.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
