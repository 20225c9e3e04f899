import json
from decimal import Decimal

import httpx
import pytest

from crypto_aggregator.connectors.kucoin import (
    BULLET_PATH,
    KuCoinConnector,
    parse_bullet,
)
from crypto_aggregator.domain import OrderBook, Ticker
from crypto_aggregator.errors import HandshakeError

BULLET = {
    "code": "200000",
    "data": {
        "token": "abc123",
        "instanceServers": [
            {
                "endpoint": "wss://ws-api-spot.kucoin.com/",
                "protocol": "websocket",
                "encrypt": True,
                "pingInterval": 30000,
                "pingTimeout": 10000,
            }
        ],
    },
}


class _Sink:
    async def publish(self, event):
        return True

    async def set_status(self, exchange, status):
        return None


def _connector(handler, **kwargs) -> tuple[KuCoinConnector, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.kucoin.com")
    connector = KuCoinConnector(
        symbols=["BTCUSDT"],
        sink=_Sink(),
        status=_Sink(),
        http_client=client,
        ping_interval=18.0,
        **kwargs,
    )
    return connector, client


def test_parse_bullet_prefers_server_ping_interval():
    session = parse_bullet(BULLET, fallback_ping_interval=18.0)

    assert session.url.startswith("wss://ws-api-spot.kucoin.com/?token=abc123&connectId=")
    assert session.ping_interval == 30.0


def test_parse_bullet_falls_back_to_configured_interval():
    body = json.loads(json.dumps(BULLET))
    del body["data"]["instanceServers"][0]["pingInterval"]

    assert parse_bullet(body, fallback_ping_interval=18.0).ping_interval == 18.0


@pytest.mark.parametrize(
    "body",
    [{}, {"data": {"token": "t", "instanceServers": []}}, {"data": {"instanceServers": [{"endpoint": "wss://x"}]}}],
)
def test_parse_bullet_rejects_incomplete_response(body):
    with pytest.raises(HandshakeError):
        parse_bullet(body, fallback_ping_interval=18.0)


async def test_prepare_requests_token_and_adopts_ping_interval():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json=BULLET)

    connector, client = _connector(handler)
    try:
        session = await connector.prepare()
    finally:
        await client.aclose()

    assert seen == [("POST", BULLET_PATH)]
    assert connector.ping_interval == 30.0
    assert "token=abc123" in session.url


async def test_prepare_failure_is_a_handshake_error():
    connector, client = _connector(lambda request: httpx.Response(503, text="maintenance"))
    try:
        with pytest.raises(HandshakeError):
            await connector.prepare()
    finally:
        await client.aclose()


async def test_subscribe_sends_one_frame_per_topic():
    class DummyWS:
        def __init__(self):
            self.sent = []

        async def send(self, data):
            self.sent.append(json.loads(data))

    connector, client = _connector(lambda request: httpx.Response(404))
    ws = DummyWS()
    try:
        await connector.subscribe(ws)
    finally:
        await client.aclose()

    assert [m["topic"] for m in ws.sent] == ["/market/ticker:BTC-USDT", "/spotMarket/level2Depth5:BTC-USDT"]
    assert all(m["type"] == "subscribe" and m["privateChannel"] is False for m in ws.sent)


async def test_decode_ticker_uses_frame_volume():
    connector, client = _connector(lambda request: httpx.Response(500))
    frame = {
        "type": "message",
        "topic": "/market/ticker:BTC-USDT",
        "subject": "trade.ticker",
        "data": {"price": "65010.0", "volValue": "8.2", "time": 1700000000000},
    }
    try:
        events = await connector.decode(json.dumps(frame))
    finally:
        await client.aclose()

    ticker = events[0]
    assert isinstance(ticker, Ticker)
    assert ticker.symbol == "BTCUSDT"
    assert ticker.exchange == "KuCoin"
    assert ticker.volume == Decimal("8.2")


async def test_decode_ticker_without_volume_uses_cached_stats_lookup():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"code": "200000", "data": {"symbol": "BTC-USDT", "volValue": "123.4"}})

    connector, client = _connector(handler)
    frame = {"type": "message", "topic": "/market/ticker:BTC-USDT", "data": {"price": "65000", "time": 1}}
    try:
        first = await connector.decode(json.dumps(frame))
        second = await connector.decode(json.dumps(frame))
    finally:
        await client.aclose()

    assert first[0].volume == Decimal("123.4")
    assert second[0].volume == Decimal("123.4")
    assert len(requests) == 1
    assert requests[0].url.params["symbol"] == "BTC-USDT"


async def test_decode_depth_snapshot():
    connector, client = _connector(lambda request: httpx.Response(500))
    frame = {
        "type": "message",
        "topic": "/spotMarket/level2Depth5:ETH-USDT",
        "subject": "level2",
        "data": {"asks": [["2001", "4"]], "bids": [["2000", "5"], ["1999", "1"]], "timestamp": 1700000000000},
    }
    try:
        events = await connector.decode(json.dumps(frame))
    finally:
        await client.aclose()

    book = events[0]
    assert isinstance(book, OrderBook)
    assert book.symbol == "ETHUSDT"
    assert [b.price for b in book.bids] == [Decimal("2000"), Decimal("1999")]


async def test_control_frames_are_ignored():
    connector, client = _connector(lambda request: httpx.Response(500))
    try:
        for frame in ({"type": "welcome", "id": "x"}, {"type": "ack", "id": "y"}, {"type": "pong"}):
            assert await connector.decode(json.dumps(frame)) == []
    finally:
        await client.aclose()


async def test_send_ping_is_a_json_ping_frame():
    class DummyWS:
        def __init__(self):
            self.sent = []

        async def send(self, data):
            self.sent.append(json.loads(data))

    connector, client = _connector(lambda request: httpx.Response(500))
    ws = DummyWS()
    try:
        await connector.send_ping(ws)
    finally:
        await client.aclose()

    assert ws.sent[0]["type"] == "ping"
    assert ws.sent[0]["id"]
