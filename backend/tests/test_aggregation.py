from datetime import datetime, timedelta, timezone
from decimal import Decimal

from crypto_aggregator.aggregation import aggregate_tickers, best_order_book
from crypto_aggregator.domain import OrderBook, OrderBookEntry, Ticker

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _ticker(exchange: str, price: str, volume: str, ts: datetime = T0) -> Ticker:
    return Ticker(symbol="BTCUSDT", exchange=exchange, price=Decimal(price), volume=Decimal(volume), timestamp=ts)


def _book(exchange: str, bids, asks) -> OrderBook:
    return OrderBook(
        symbol="BTCUSDT",
        exchange=exchange,
        bids=tuple(OrderBookEntry(price=Decimal(p), quantity=Decimal(q)) for p, q in bids),
        asks=tuple(OrderBookEntry(price=Decimal(p), quantity=Decimal(q)) for p, q in asks),
    )


def test_aggregate_tickers_across_two_exchanges():
    later = T0 + timedelta(seconds=3)
    result = aggregate_tickers(
        "BTCUSDT",
        [_ticker("Binance", "65000.5", "12.1", T0), _ticker("KuCoin", "65010.0", "8.2", later)],
    )

    assert result is not None
    assert result.average_price == Decimal("65005.25")
    assert result.total_volume == Decimal("20.3")
    assert result.min_price == Decimal("65000.5")
    assert result.max_price == Decimal("65010.0")
    assert result.exchanges_count == 2
    assert result.timestamp == later


def test_aggregate_single_ticker_equals_itself():
    result = aggregate_tickers("btc-usdt", [_ticker("Binance", "100", "3")])

    assert result is not None
    assert result.symbol == "BTCUSDT"
    assert result.average_price == result.min_price == result.max_price == Decimal("100")
    assert result.exchanges_count == 1


def test_aggregate_without_data_is_none():
    assert aggregate_tickers("BTCUSDT", []) is None
    assert best_order_book("BTCUSDT", []) is None


def test_best_order_book_picks_highest_bid_and_lowest_ask():
    books = [
        _book("Binance", bids=[("100", "1"), ("99", "2")], asks=[("102", "1")]),
        _book("KuCoin", bids=[("101", "0.5")], asks=[("101.5", "3"), ("103", "1")]),
    ]

    result = best_order_book("BTCUSDT", books, now=T0)

    assert result is not None
    assert result.best_bid == OrderBookEntry(price=Decimal("101"), quantity=Decimal("0.5"))
    assert result.best_ask == OrderBookEntry(price=Decimal("101.5"), quantity=Decimal("3"))
    assert result.timestamp == T0
    for book in books:
        for bid in book.bids:
            assert result.best_bid.price >= bid.price


def test_best_order_book_tie_goes_to_first_exchange():
    books = [
        _book("Binance", bids=[("100", "1")], asks=[("101", "1")]),
        _book("KuCoin", bids=[("100", "7")], asks=[("101", "9")]),
    ]

    result = best_order_book("BTCUSDT", books)

    assert result.best_bid.quantity == Decimal("1")
    assert result.best_ask.quantity == Decimal("1")


def test_best_order_book_without_bids_has_no_best_bid():
    result = best_order_book("BTCUSDT", [_book("Binance", bids=[], asks=[("101", "1")])])

    assert result is not None
    assert result.best_bid is None
    assert result.best_ask.price == Decimal("101")
