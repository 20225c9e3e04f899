from __future__ import annotations

import json
import logging
import uuid
from typing import Any, List

import httpx

from ..domain import MarketEvent, OrderBook, Ticker, from_millis, utc_now
from ..errors import DecodeError, HandshakeError
from ..symbols import to_dashed
from .base import ConnectorSpec, Session, StreamConnector
from .utils import decode_frame, optional_decimal, parse_levels, to_decimal
from .volume import VolumeFallback

logger = logging.getLogger(__name__)

REST_ENDPOINT = "https://api.kucoin.com"
BULLET_PATH = "/api/v1/bullet-public"
TICKER_TOPIC = "/market/ticker:"
DEPTH_TOPIC = "/spotMarket/level2Depth5:"
_CONTROL_TYPES = {"welcome", "ack", "pong"}


def parse_bullet(body: Any, *, fallback_ping_interval: float) -> Session:
    """Build the websocket session from a ``bullet-public`` response.

    The server dictated ``pingInterval`` (milliseconds) overrides the
    configured one; the configured value is only used when it is missing.
    """

    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise HandshakeError("bullet response without data")
    token = data.get("token")
    servers = data.get("instanceServers") or []
    if not token or not servers or not isinstance(servers[0], dict):
        raise HandshakeError("bullet response without token or instance servers")
    server = servers[0]
    endpoint = server.get("endpoint")
    if not endpoint:
        raise HandshakeError("bullet response without endpoint")
    ping_interval = fallback_ping_interval
    try:
        ping_ms = int(server.get("pingInterval"))
    except (TypeError, ValueError):
        logger.warning("KuCoin bullet without pingInterval, using %.1fs", fallback_ping_interval)
    else:
        if ping_ms > 0:
            ping_interval = ping_ms / 1000.0
    connect_id = uuid.uuid4().hex
    return Session(url=f"{endpoint}?token={token}&connectId={connect_id}", ping_interval=ping_interval)


class KuCoinConnector(StreamConnector):
    """Token-bootstrapped connector with a server-dictated keepalive interval."""

    def __init__(
        self,
        *,
        rest_endpoint: str = REST_ENDPOINT,
        http_client: httpx.AsyncClient | None = None,
        http_timeout: float = 10.0,
        volume_ttl: float = 60.0,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("name", "KuCoin")
        super().__init__(**kwargs)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=rest_endpoint, timeout=httpx.Timeout(http_timeout)
        )
        self.volume = VolumeFallback(self._http, ttl=volume_ttl)
        self.ping_interval = self._ping_interval

    async def prepare(self) -> Session:
        try:
            resp = await self._http.post(BULLET_PATH)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise HandshakeError(f"KuCoin token request failed: {exc!r}") from exc
        session = parse_bullet(body, fallback_ping_interval=self._ping_interval)
        self.ping_interval = session.ping_interval
        return session

    def subscription_topics(self) -> List[str]:
        topics: List[str] = []
        for sym in self.symbols:
            native = to_dashed(sym)
            topics.append(f"{TICKER_TOPIC}{native}")
            topics.append(f"{DEPTH_TOPIC}{native}")
        return topics

    async def subscribe(self, ws) -> None:
        topics = self.subscription_topics()
        for topic in topics:
            payload = {
                "id": uuid.uuid4().hex,
                "type": "subscribe",
                "topic": topic,
                "privateChannel": False,
                "response": True,
            }
            await ws.send(json.dumps(payload))
        logger.info("KuCoin subscribed to %d topic(s)", len(topics))

    async def send_ping(self, ws) -> None:
        await ws.send(json.dumps({"id": uuid.uuid4().hex, "type": "ping"}))

    async def decode(self, raw: str | bytes) -> List[MarketEvent]:
        message = decode_frame(raw)
        if message is None:
            logger.warning("KuCoin: skipping non-JSON frame")
            return []
        kind = message.get("type")
        if kind in _CONTROL_TYPES:
            return []
        if kind == "error":
            logger.warning("KuCoin error frame: %s", message)
            return []
        if kind != "message":
            logger.debug("KuCoin: ignoring frame %s", message)
            return []
        topic = str(message.get("topic") or "")
        data = message.get("data")
        payload = data.get("data") if isinstance(data, dict) and isinstance(data.get("data"), dict) else data
        if not isinstance(payload, dict):
            raise DecodeError(f"message on {topic!r} without payload")
        if topic.startswith(TICKER_TOPIC):
            return [await self._ticker(topic[len(TICKER_TOPIC) :], payload)]
        if topic.startswith(DEPTH_TOPIC):
            return [self._order_book(topic[len(DEPTH_TOPIC) :], payload)]
        logger.debug("KuCoin: ignoring topic %s", topic)
        return []

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _ticker(self, native: str, payload: dict) -> Ticker:
        price = to_decimal(payload.get("price"), field="price")
        volume = optional_decimal(payload.get("volValue"))
        if volume is None or volume <= 0:
            volume = optional_decimal(payload.get("vol"))
        if volume is None or volume <= 0:
            volume = await self.volume.get(native)
        return Ticker(
            symbol=native,
            price=price,
            volume=volume,
            timestamp=from_millis(payload.get("time")) or utc_now(),
            exchange=self.name,
        )

    def _order_book(self, native: str, payload: dict) -> OrderBook:
        return OrderBook(
            symbol=native,
            bids=parse_levels(payload.get("bids"), side="bid"),
            asks=parse_levels(payload.get("asks"), side="ask"),
            timestamp=from_millis(payload.get("timestamp")) or utc_now(),
            exchange=self.name,
        )


connector = ConnectorSpec(
    name="KuCoin",
    factory=KuCoinConnector,
    options=lambda cfg: {"http_timeout": cfg.http_timeout, "volume_ttl": cfg.volume_ttl},
)
