"""Cross-exchange views computed from per-exchange cache entries.

Both functions are pure: they take the still-tagged per-exchange records the
caller read from cache and never touch I/O, so they are recomputed on every
trigger without side effects.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence

from .domain import (
    AggregatedTicker,
    BestOrderBook,
    OrderBook,
    OrderBookEntry,
    Symbol,
    Ticker,
    utc_now,
)
from .symbols import normalize_symbol


def aggregate_tickers(symbol: Symbol, tickers: Sequence[Ticker]) -> AggregatedTicker | None:
    """Return the aggregate over ``tickers`` or ``None`` when there is no data."""

    if not tickers:
        return None
    prices = [t.price for t in tickers]
    return AggregatedTicker(
        symbol=normalize_symbol(symbol),
        average_price=sum(prices, Decimal(0)) / len(prices),
        total_volume=sum((t.volume for t in tickers), Decimal(0)),
        min_price=min(prices),
        max_price=max(prices),
        timestamp=max(t.timestamp for t in tickers),
        exchanges_count=len(tickers),
    )


def _best(levels: Iterable[OrderBookEntry], *, highest: bool) -> OrderBookEntry | None:
    best: OrderBookEntry | None = None
    for level in levels:
        # strict comparison keeps the first-seen level on equal prices
        if best is None or (level.price > best.price if highest else level.price < best.price):
            best = level
    return best


def best_order_book(
    symbol: Symbol,
    books: Sequence[OrderBook],
    *,
    now: datetime | None = None,
) -> BestOrderBook | None:
    """Pick the highest bid and the lowest ask across ``books``.

    Books are scanned in the given order (the configured exchange order), so
    equal prices resolve to the first exchange that quoted them. Returns
    ``None`` when no book is available at all.
    """

    if not books:
        return None
    return BestOrderBook(
        symbol=normalize_symbol(symbol),
        best_bid=_best((level for book in books for level in book.bids), highest=True),
        best_ask=_best((level for book in books for level in book.asks), highest=False),
        timestamp=now or utc_now(),
    )
