from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List

from ..domain import MarketEvent, OrderBook, Ticker, from_millis, utc_now
from ..errors import DecodeError
from .base import ConnectorSpec, Session, StreamConnector
from .utils import decode_frame, parse_levels, to_decimal

logger = logging.getLogger(__name__)

WS_ENDPOINT = "wss://stream.binance.com:9443/stream"
SUBSCRIBE_CHUNK = 200  # Binance caps params per SUBSCRIBE request


def _stream_name_ticker(sym: str) -> str:
    return f"{sym.lower()}@ticker"


def _stream_name_depth(sym: str) -> str:
    return f"{sym.lower()}@depth5@100ms"


class BinanceConnector(StreamConnector):
    """Combined-stream connector: static URL, keepalive interval from configuration."""

    def __init__(self, *, endpoint: str = WS_ENDPOINT, **kwargs: Any) -> None:
        kwargs.setdefault("name", "Binance")
        super().__init__(**kwargs)
        self._endpoint = endpoint
        self._request_id = 0

    async def prepare(self) -> Session:
        return Session(url=self._endpoint, ping_interval=self._ping_interval)

    def subscription_topics(self) -> List[str]:
        topics: List[str] = []
        for sym in self.symbols:
            topics.append(_stream_name_ticker(sym))
            topics.append(_stream_name_depth(sym))
        return topics

    async def subscribe(self, ws) -> None:
        topics = self.subscription_topics()
        for i in range(0, len(topics), SUBSCRIBE_CHUNK):
            self._request_id += 1
            payload = {
                "method": "SUBSCRIBE",
                "params": topics[i : i + SUBSCRIBE_CHUNK],
                "id": self._request_id,
            }
            await ws.send(json.dumps(payload))
        logger.info("Binance subscribed to %d stream(s)", len(topics))

    async def send_ping(self, ws) -> None:
        pong_waiter = await ws.ping()
        await asyncio.wait_for(pong_waiter, timeout=self._ping_interval)

    async def decode(self, raw: str | bytes) -> List[MarketEvent]:
        message = decode_frame(raw)
        if message is None:
            logger.warning("Binance: skipping non-JSON frame")
            return []
        if "id" in message and "result" in message:
            return []
        stream = message.get("stream")
        data = message.get("data")
        if not isinstance(stream, str) or not isinstance(data, dict):
            logger.debug("Binance: ignoring frame %s", message)
            return []
        if data.get("e") == "24hrTicker":
            return [self._ticker(data)]
        if "lastUpdateId" in data:
            return [self._order_book(stream, data)]
        logger.debug("Binance: ignoring stream %s", stream)
        return []

    def _ticker(self, data: dict) -> Ticker:
        symbol = data.get("s")
        if not symbol:
            raise DecodeError("ticker without symbol")
        return Ticker(
            symbol=symbol,
            price=to_decimal(data.get("c"), field="price"),
            volume=to_decimal(data.get("v"), field="volume"),
            timestamp=from_millis(data.get("E")) or utc_now(),
            exchange=self.name,
        )

    def _order_book(self, stream: str, data: dict) -> OrderBook:
        # partial depth payloads carry no symbol; it is the stream name prefix
        symbol = stream.split("@", 1)[0]
        if not symbol:
            raise DecodeError(f"cannot resolve symbol from stream {stream!r}")
        return OrderBook(
            symbol=symbol,
            bids=parse_levels(data.get("bids"), side="bid"),
            asks=parse_levels(data.get("asks"), side="ask"),
            timestamp=utc_now(),
            exchange=self.name,
        )


connector = ConnectorSpec(name="Binance", factory=BinanceConnector)
