import asyncio

import pytest

from fakes import FakeRedis

from crypto_aggregator.cache import MarketCache
from crypto_aggregator.connectors import ConnectorState, load_connectors
from crypto_aggregator.connectors.binance import BinanceConnector
from crypto_aggregator.connectors.kucoin import KuCoinConnector
from crypto_aggregator.connectors.registry import build_connectors
from crypto_aggregator.errors import QueueUnavailableError
from crypto_aggregator.gateway import Gateway
from crypto_aggregator.pipeline import Pipeline
from crypto_aggregator.settings import Settings


def _settings(**overrides) -> Settings:
    values = dict(symbols=["BTCUSDT", "ETHUSDT"], exchanges=["Binance", "KuCoin"], reconnect_delay=0)
    values.update(overrides)
    return Settings(**values)


class _Sink:
    async def publish(self, event):
        return True

    async def set_status(self, exchange, status):
        return None


def test_load_connectors_keeps_configured_names():
    loaded = load_connectors(["Binance", "KuCoin"])
    assert [name for name, _ in loaded] == ["Binance", "KuCoin"]


def test_unknown_exchange_is_skipped():
    loaded = load_connectors(["Binance", "Nowhere"])
    assert [name for name, _ in loaded] == ["Binance"]


def test_no_loadable_exchange_is_fatal():
    with pytest.raises(RuntimeError):
        load_connectors(["Nowhere"])


async def test_build_connectors_passes_settings_through():
    cfg = _settings(ping_interval_ms=15000, volume_ttl=30)
    sink = _Sink()

    built = build_connectors(cfg, sink=sink, status=sink)
    try:
        assert [type(c) for c in built] == [BinanceConnector, KuCoinConnector]
        assert [c.name for c in built] == ["Binance", "KuCoin"]
        assert all(c.symbols == ["BTCUSDT", "ETHUSDT"] for c in built)
        assert built[0]._ping_interval == 15.0
        assert built[1].volume._ttl == 30
    finally:
        for connector in built:
            await connector.aclose()


class _IdleConnector:
    def __init__(self, name):
        self.name = name
        self.cancelled = False
        self.state = ConnectorState.STREAMING

    async def run(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class _IdleQueue:
    def __init__(self):
        self.closed = False

    async def consume(self, handler):
        await asyncio.Event().wait()

    async def close(self):
        self.closed = True


async def test_start_and_stop_runs_every_task_once():
    redis = FakeRedis()
    queue = _IdleQueue()
    connectors = [_IdleConnector("Binance"), _IdleConnector("KuCoin")]
    gateway = Gateway(MarketCache(redis), ["Binance", "KuCoin"])
    seen = {}

    async def queue_factory(cfg, url):
        seen["url"] = url
        return queue

    def connector_factory(cfg, *, sink, status):
        seen["sink"], seen["status"] = sink, status
        return connectors

    pipeline = Pipeline(
        _settings(),
        MarketCache(redis),
        gateway=gateway,
        queue_factory=queue_factory,
        connector_factory=connector_factory,
    )

    await pipeline.start()
    await asyncio.sleep(0)

    assert pipeline.running
    assert seen["sink"] is queue
    assert seen["status"] is pipeline.cache
    assert pipeline.stats()["connectors"] == {"Binance": "streaming", "KuCoin": "streaming"}

    await pipeline.stop()

    assert not pipeline.running
    assert all(c.cancelled for c in connectors)
    assert queue.closed
    assert redis.closed
    assert gateway._shutdown_event().is_set()


async def test_unreachable_broker_fails_start():
    async def queue_factory(cfg, url):
        raise QueueUnavailableError("no broker")

    def connector_factory(cfg, *, sink, status):
        raise AssertionError("connectors must not start without a broker")

    pipeline = Pipeline(
        _settings(), MarketCache(FakeRedis()), queue_factory=queue_factory, connector_factory=connector_factory
    )

    with pytest.raises(QueueUnavailableError):
        await pipeline.start()
    assert not pipeline.running


async def test_connector_failure_releases_the_queue():
    queue = _IdleQueue()

    async def queue_factory(cfg, url):
        return queue

    def connector_factory(cfg, *, sink, status):
        raise RuntimeError("No connectors were loaded")

    pipeline = Pipeline(
        _settings(), MarketCache(FakeRedis()), queue_factory=queue_factory, connector_factory=connector_factory
    )

    with pytest.raises(RuntimeError):
        await pipeline.start()
    assert queue.closed
    assert pipeline.queue is None
    assert not pipeline.running
