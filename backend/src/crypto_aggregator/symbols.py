"""Utilities for normalizing market symbols across exchanges."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Tuple

__all__ = ["normalize_symbol", "split_symbol", "to_dashed", "NormalizedSymbol"]

_SEPARATORS_RE = re.compile(r"[^A-Za-z0-9]")
_KNOWN_QUOTES: Tuple[str, ...] = (
    "USDT",
    "USDC",
    "BUSD",
    "FDUSD",
    "TUSD",
    "USD",
    "DAI",
    "EUR",
    "TRY",
    "BTC",
    "ETH",
    "BNB",
    "KCS",
)


@dataclass(frozen=True)
class NormalizedSymbol:
    """A normalized spot symbol split into base and quote assets."""

    value: str
    base: str
    quote: str


def normalize_symbol(raw: str | None) -> str:
    """Strip separators and upper-case a raw exchange symbol (``btc-usdt`` -> ``BTCUSDT``)."""

    if not raw:
        return ""
    return _SEPARATORS_RE.sub("", str(raw).strip()).upper()


def split_symbol(raw: str | None) -> NormalizedSymbol:
    norm = normalize_symbol(raw)
    if not norm:
        return NormalizedSymbol("", "", "")
    for quote in _KNOWN_QUOTES:
        if norm.endswith(quote) and len(norm) > len(quote):
            return NormalizedSymbol(norm, norm[: -len(quote)], quote)
    return NormalizedSymbol(norm, norm, "")


def to_dashed(raw: str | None) -> str:
    """Return the ``BASE-QUOTE`` form used by exchanges such as KuCoin."""

    parts = split_symbol(raw)
    if not parts.quote:
        return parts.value
    return f"{parts.base}-{parts.quote}"
