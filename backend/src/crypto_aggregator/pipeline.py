from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List

from .aggregator import Aggregator
from .broker import QueueClient
from .cache import MarketCache
from .connectors import StreamConnector, build_connectors
from .gateway import Gateway
from .settings import RabbitMqSettings, Settings

logger = logging.getLogger(__name__)

QueueFactory = Callable[[RabbitMqSettings, str], Awaitable[QueueClient]]


class Pipeline:
    """Starts and stops every long-lived task of the process.

    ``start`` fails with :class:`~crypto_aggregator.errors.QueueUnavailableError`
    when the broker cannot be reached, and with the factory error when no
    connector can be built; nothing is left running or connected in either case.
    ``stop`` cancels connectors and the consumer, then releases the broker
    and cache connections and tells open gateway sessions to finish.
    """

    def __init__(
        self,
        cfg: Settings,
        cache: MarketCache,
        *,
        gateway: Gateway | None = None,
        queue_factory: QueueFactory = QueueClient.create,
        connector_factory: Callable[..., List[StreamConnector]] = build_connectors,
    ) -> None:
        self._cfg = cfg
        self.cache = cache
        self.gateway = gateway
        self._queue_factory = queue_factory
        self._connector_factory = connector_factory
        self.queue: QueueClient | None = None
        self.aggregator: Aggregator | None = None
        self.connectors: List[StreamConnector] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        cfg = self._cfg
        logger.info(
            "Starting pipeline: exchanges=%s symbols=%s",
            ",".join(cfg.exchanges),
            ",".join(cfg.symbols),
        )
        self.queue = await self._queue_factory(cfg.rabbitmq, cfg.amqp_url)
        try:
            self.connectors = self._connector_factory(cfg, sink=self.queue, status=self.cache)
            self.aggregator = Aggregator(self.cache, self.queue, restart_delay=cfg.reconnect_delay)
        except Exception:
            await self.queue.close()
            self.queue = None
            raise

        self._tasks.append(asyncio.create_task(self.aggregator.run(), name="aggregator"))
        for connector in self.connectors:
            self._tasks.append(asyncio.create_task(connector.run(), name=f"connector:{connector.name}"))

    async def stop(self) -> None:
        if self.gateway is not None:
            self.gateway.shutdown()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self.queue is not None:
            await self.queue.close()
            self.queue = None
        try:
            await self.cache.close()
        except Exception:
            logger.warning("Error while closing cache connection", exc_info=True)
        logger.info("Pipeline stopped")

    async def wait(self) -> None:
        """Block until every task finished (normally: until ``stop``)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        return {
            "exchanges": list(self._cfg.exchanges),
            "symbols": list(self._cfg.symbols),
            "connectors": {c.name: c.state.value for c in self.connectors},
            "processed": self.aggregator.processed if self.aggregator else 0,
        }
