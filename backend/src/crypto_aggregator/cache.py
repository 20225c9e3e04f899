from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError

from .domain import (
    ConnectionStatus,
    ExchangeName,
    ExchangeStatus,
    MarketEvent,
    OrderBook,
    Symbol,
    Ticker,
)
from .settings import RedisSettings

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)


def cache_key(kind: str, symbol: Symbol, exchange: ExchangeName) -> str:
    return f"{kind}:{symbol}:{exchange}"


def ticker_key(symbol: Symbol, exchange: ExchangeName) -> str:
    return cache_key("ticker", symbol, exchange)


def orderbook_key(symbol: Symbol, exchange: ExchangeName) -> str:
    return cache_key("orderbook", symbol, exchange)


def status_key(exchange: ExchangeName) -> str:
    return f"status:{exchange}"


def update_topic(kind: str, symbol: Symbol, exchange: ExchangeName) -> str:
    return f"updates:{kind}:{symbol}:{exchange}"


class MarketCache:
    """Latest-value market state in Redis plus the ``updates:*`` pub/sub topics.

    Every key is written with a TTL; a missing key means "no recent data".
    Writes are last-write-wins point updates, so no client-side locking is
    needed.
    """

    def __init__(self, client: "redis.Redis", *, data_ttl: int = 60, status_ttl: int = 300) -> None:
        self._client = client
        self._data_ttl = int(data_ttl)
        self._status_ttl = int(status_ttl)

    @classmethod
    def from_settings(cls, cfg: RedisSettings) -> "MarketCache":
        client = redis.Redis(
            host=cfg.host,
            port=cfg.port,
            db=cfg.db,
            password=cfg.password,
            decode_responses=True,
        )
        return cls(client, data_ttl=cfg.data_ttl, status_ttl=cfg.status_ttl)

    @property
    def client(self) -> "redis.Redis":
        return self._client

    async def write_event(self, event: MarketEvent) -> str:
        """Store ``event`` under its cache key and publish it on its topic.

        The write and the publish run in one MULTI/EXEC block so subscribers
        never see an update that is not yet readable from cache.
        """

        payload = event.to_json()
        key = cache_key(event.kind, event.symbol, event.exchange)
        topic = update_topic(event.kind, event.symbol, event.exchange)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(key, payload, ex=self._data_ttl)
            pipe.publish(topic, payload)
            await pipe.execute()
        return payload

    async def set_status(self, exchange: ExchangeName, status: ConnectionStatus) -> ExchangeStatus:
        record = ExchangeStatus(status=status)
        await self._client.set(status_key(exchange), record.to_json(), ex=self._status_ttl)
        return record

    async def get_status(self, exchange: ExchangeName) -> ExchangeStatus | None:
        raw = await self._client.get(status_key(exchange))
        return self._parse(ExchangeStatus, raw, status_key(exchange))

    async def get_statuses(self, exchanges: Iterable[ExchangeName]) -> Dict[ExchangeName, ExchangeStatus | None]:
        names = list(exchanges)
        return await self._read_many(ExchangeStatus, names, [status_key(ex) for ex in names])

    async def get_ticker(self, symbol: Symbol, exchange: ExchangeName) -> Ticker | None:
        key = ticker_key(symbol, exchange)
        return self._parse(Ticker, await self._client.get(key), key)

    async def get_tickers(self, symbol: Symbol, exchanges: Iterable[ExchangeName]) -> Dict[ExchangeName, Ticker | None]:
        names = list(exchanges)
        return await self._read_many(Ticker, names, [ticker_key(symbol, ex) for ex in names])

    async def get_order_book(self, symbol: Symbol, exchange: ExchangeName) -> OrderBook | None:
        key = orderbook_key(symbol, exchange)
        return self._parse(OrderBook, await self._client.get(key), key)

    async def get_order_books(
        self, symbol: Symbol, exchanges: Iterable[ExchangeName]
    ) -> Dict[ExchangeName, OrderBook | None]:
        names = list(exchanges)
        return await self._read_many(OrderBook, names, [orderbook_key(symbol, ex) for ex in names])

    def pubsub(self):
        return self._client.pubsub()

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()

    async def _read_many(self, model: Type[_M], names: List[str], keys: List[str]) -> Dict[str, _M | None]:
        if not keys:
            return {}
        values = await self._client.mget(keys)
        return {name: self._parse(model, raw, key) for name, key, raw in zip(names, keys, values)}

    @staticmethod
    def _parse(model: Type[_M], raw, key: str) -> _M | None:
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cache entry %s", key)
            return None
