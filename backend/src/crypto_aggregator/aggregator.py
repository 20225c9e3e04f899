"""Queue consumer writing the latest market state to cache and topics."""

from __future__ import annotations

import asyncio
import logging

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .broker import QueueClient
from .cache import MarketCache
from .domain import MarketEvent, decode_event
from .errors import DecodeError, PoisonMessageError, TransientError
from .symbols import normalize_symbol

logger = logging.getLogger(__name__)


class Aggregator:
    """Sole consumer of the market data queue.

    Each message is decoded, written to ``{kind}:{symbol}:{exchange}`` and
    republished on ``updates:{kind}:{symbol}:{exchange}``. Undecodable
    messages are dropped; cache outages requeue the message; anything else is
    logged and the loop carries on with the next message.
    """

    def __init__(self, cache: MarketCache, queue: QueueClient, *, restart_delay: float = 5.0) -> None:
        self._cache = cache
        self._queue = queue
        self._restart_delay = restart_delay
        self.processed = 0

    async def handle(self, body: bytes) -> None:
        try:
            event = decode_event(body)
        except DecodeError as exc:
            raise PoisonMessageError(str(exc)) from exc
        event = self._normalize(event)
        try:
            await self._cache.write_event(event)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise TransientError(f"cache unavailable: {exc}") from exc
        except Exception:
            logger.exception("Failed to store %s %s:%s", event.kind, event.symbol, event.exchange)
            return
        self.processed += 1
        logger.debug("Stored %s %s:%s", event.kind, event.symbol, event.exchange)

    async def run(self) -> None:
        """Consume for the lifetime of the process; only cancellation stops it."""

        while True:
            try:
                await self._queue.consume(self.handle)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Queue consumer failed, restarting in %.1fs", self._restart_delay)
            else:
                logger.warning("Queue consumer ended, restarting in %.1fs", self._restart_delay)
            await asyncio.sleep(self._restart_delay)

    @staticmethod
    def _normalize(event: MarketEvent) -> MarketEvent:
        symbol = normalize_symbol(event.symbol)
        if symbol == event.symbol:
            return event
        return event.model_copy(update={"symbol": symbol})
