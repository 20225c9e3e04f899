"""Read-only HTTP views over the cache, plus health checks."""

from __future__ import annotations

import logging
from typing import Sequence

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse

from .cache import MarketCache
from .domain import ExchangeName
from .symbols import normalize_symbol

logger = logging.getLogger(__name__)


def build_router(cache: MarketCache, exchanges: Sequence[ExchangeName]) -> APIRouter:
    exchanges = list(exchanges)
    router = APIRouter(prefix="/api")

    def _symbol(raw: str) -> str:
        symbol = normalize_symbol(raw)
        if not symbol:
            raise HTTPException(status_code=400, detail="Invalid symbol")
        return symbol

    @router.get("/crypto/ticker/{symbol}")
    async def ticker(symbol: str):
        symbol = _symbol(symbol)
        found = await cache.get_tickers(symbol, exchanges)
        if not any(found.values()):
            raise HTTPException(status_code=404, detail=f"No ticker data for {symbol}")
        return {
            ex: (item.model_dump(mode="json", by_alias=True) if item is not None else None)
            for ex, item in found.items()
        }

    @router.get("/crypto/orderbook/{symbol}")
    async def orderbook(symbol: str):
        symbol = _symbol(symbol)
        found = await cache.get_order_books(symbol, exchanges)
        if not any(found.values()):
            raise HTTPException(status_code=404, detail=f"No order book data for {symbol}")
        return {
            ex: (item.model_dump(mode="json", by_alias=True) if item is not None else None)
            for ex, item in found.items()
        }

    @router.get("/health/status")
    async def health_status():
        statuses = await cache.get_statuses(exchanges)
        return {
            ex: (record.model_dump(mode="json", by_alias=True) if record is not None else None)
            for ex, record in statuses.items()
        }

    @router.get("/health/ping", response_class=PlainTextResponse)
    async def health_ping():
        return "Pong"

    return router
