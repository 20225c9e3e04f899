"""Websocket fan-out of the ``updates:*`` topics to live subscribers."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, List, Sequence, Set

from fastapi import APIRouter, WebSocket, status
from starlette.websockets import WebSocketState

from .aggregation import aggregate_tickers, best_order_book
from .cache import MarketCache, update_topic
from .domain import ExchangeName, Symbol
from .symbols import normalize_symbol

logger = logging.getLogger(__name__)


class StreamKind(str, Enum):
    TICKER = "ticker"
    ORDERBOOK = "orderbook"
    AGGREGATED_TICKER = "aggregated-ticker"
    BEST_ORDERBOOK = "best-orderbook"

    @classmethod
    def parse(cls, raw: str) -> "StreamKind | None":
        return _KIND_ALIASES.get(str(raw).strip().lower().replace("_", "-"))

    @property
    def derived(self) -> bool:
        return self in (StreamKind.AGGREGATED_TICKER, StreamKind.BEST_ORDERBOOK)

    @property
    def source(self) -> str:
        """Cache/topic kind the stream is driven by."""
        if self in (StreamKind.TICKER, StreamKind.AGGREGATED_TICKER):
            return "ticker"
        return "orderbook"


_KIND_ALIASES = {
    "ticker": StreamKind.TICKER,
    "orderbook": StreamKind.ORDERBOOK,
    "order-book": StreamKind.ORDERBOOK,
    "aggregated-ticker": StreamKind.AGGREGATED_TICKER,
    "best-orderbook": StreamKind.BEST_ORDERBOOK,
    "best-order-book": StreamKind.BEST_ORDERBOOK,
}


def resolve_topics(kind: StreamKind, symbol: Symbol, exchanges: Sequence[ExchangeName]) -> List[str]:
    return [update_topic(kind.source, symbol, exchange) for exchange in exchanges]


class ViewRenderer:
    """Builds the outbound payload for one trigger.

    Raw kinds forward the trigger payload as is. Derived kinds ignore it and
    recompute the view from a fresh cache read across every configured
    exchange.
    """

    def __init__(self, cache: MarketCache, exchanges: Sequence[ExchangeName]) -> None:
        self._cache = cache
        self._exchanges = list(exchanges)

    async def render(self, kind: StreamKind, symbol: Symbol, payload: str | None) -> str | None:
        if not kind.derived:
            return payload
        if kind is StreamKind.AGGREGATED_TICKER:
            tickers = await self._cache.get_tickers(symbol, self._exchanges)
            view = aggregate_tickers(symbol, [t for t in tickers.values() if t is not None])
        else:
            books = await self._cache.get_order_books(symbol, self._exchanges)
            view = best_order_book(symbol, [b for b in books.values() if b is not None])
        return view.to_json() if view is not None else None


class SubscriptionSession:
    """One subscriber: its topics, its pub/sub connection and its socket.

    Messages are delivered one at a time. For derived kinds, triggers that
    arrive while a view is being recomputed collapse into one more
    recomputation. Topics are always unsubscribed and the pub/sub connection
    released when the session ends, however it ends.
    """

    def __init__(
        self,
        websocket: WebSocket,
        pubsub,
        renderer: ViewRenderer,
        kind: StreamKind,
        symbol: Symbol,
        topics: Sequence[str],
        *,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self._ws = websocket
        self._pubsub = pubsub
        self._renderer = renderer
        self.kind = kind
        self.symbol = symbol
        self.topics = list(topics)
        self._shutdown = shutdown
        self.sent = 0

    async def run(self) -> None:
        try:
            await self._pubsub.subscribe(*self.topics)
            logger.info("Subscriber joined %s/%s (%d topic(s))", self.kind.value, self.symbol, len(self.topics))
            tasks: Set[asyncio.Task] = {
                asyncio.create_task(self._watch_close()),
                asyncio.create_task(self._forward()),
            }
            if self._shutdown is not None:
                tasks.add(asyncio.create_task(self._shutdown.wait()))
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.warning(
                        "Subscriber %s/%s ended: %r", self.kind.value, self.symbol, task.exception()
                    )
        finally:
            await self._release()
            await self._close_socket()

    async def _watch_close(self) -> None:
        # subscribers never send data; only the close frame matters
        while True:
            message = await self._ws.receive()
            if message.get("type") == "websocket.disconnect":
                return

    async def _forward(self) -> None:
        if not self.kind.derived:
            async for payload in self._messages():
                await self._deliver(payload)
            return
        signals: asyncio.Queue[bool] = asyncio.Queue()
        pump = asyncio.create_task(self._pump(signals))
        try:
            while await signals.get():
                await self._deliver(None)
            # the pump only stops when the pub/sub stream ended or failed
            await pump
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _pump(self, signals: "asyncio.Queue[bool]") -> None:
        try:
            async for _ in self._messages():
                if signals.empty():
                    signals.put_nowait(True)
        finally:
            signals.put_nowait(False)

    async def _messages(self) -> AsyncIterator[str]:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, (bytes, bytearray)):
                data = data.decode("utf-8")
            yield data

    async def _deliver(self, payload: str | None) -> None:
        try:
            body = await self._renderer.render(self.kind, self.symbol, payload)
        except Exception:
            logger.exception("Failed to build %s update for %s", self.kind.value, self.symbol)
            return
        if body is None:
            return
        await self._ws.send_text(body)
        self.sent += 1

    async def _release(self) -> None:
        try:
            await self._pubsub.unsubscribe(*self.topics)
        except Exception:
            logger.warning("Failed to unsubscribe %s", self.topics, exc_info=True)
        finally:
            await self._pubsub.aclose()
        logger.info("Subscriber left %s/%s", self.kind.value, self.symbol)

    async def _close_socket(self) -> None:
        if self._ws.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self._ws.close(code=status.WS_1000_NORMAL_CLOSURE)
        except Exception:
            logger.debug("Websocket already closed for %s/%s", self.kind.value, self.symbol)


class Gateway:
    """Owns the websocket route and the shutdown signal of every live session."""

    def __init__(self, cache: MarketCache, exchanges: Sequence[ExchangeName]) -> None:
        self._cache = cache
        self._exchanges = list(exchanges)
        self._renderer = ViewRenderer(cache, self._exchanges)
        self._shutdown: asyncio.Event | None = None
        self.router = APIRouter(prefix="/api/crypto/ws", tags=["streaming"])
        self.router.add_api_websocket_route("/{stream}/{symbol}", self.stream_updates)

    def session(self, websocket: WebSocket, kind: StreamKind, symbol: Symbol) -> SubscriptionSession:
        symbol = normalize_symbol(symbol)
        return SubscriptionSession(
            websocket,
            self._cache.pubsub(),
            self._renderer,
            kind,
            symbol,
            resolve_topics(kind, symbol, self._exchanges),
            shutdown=self._shutdown_event(),
        )

    async def stream_updates(self, websocket: WebSocket, stream: str, symbol: str) -> None:
        kind = StreamKind.parse(stream)
        if kind is None or not normalize_symbol(symbol):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await websocket.accept()
        await self.session(websocket, kind, symbol).run()

    def shutdown(self) -> None:
        """Ask every live session to release its topics and close."""
        self._shutdown_event().set()

    def _shutdown_event(self) -> asyncio.Event:
        if self._shutdown is None:
            self._shutdown = asyncio.Event()
        return self._shutdown
