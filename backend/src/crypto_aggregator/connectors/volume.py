from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict

import httpx

from ..errors import DecodeError
from .utils import to_decimal

logger = logging.getLogger(__name__)

STATS_PATH = "/api/v1/market/stats"


@dataclass(frozen=True)
class _VolumeEntry:
    volume: Decimal
    fetched_at: float


class VolumeFallback:
    """Per-symbol 24h volume looked up over REST when a ticker frame lacks one.

    Each symbol has its own entry and its own TTL. A failed lookup falls back
    to that symbol's last known value, or zero when it never had one, and that
    fallback is kept for a full TTL before REST is tried again.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        ttl: float = 60.0,
        path: str = STATS_PATH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl = ttl
        self._path = path
        self._clock = clock
        self._entries: Dict[str, _VolumeEntry] = {}

    def peek(self, symbol: str) -> Decimal | None:
        entry = self._entries.get(symbol)
        return entry.volume if entry else None

    async def get(self, symbol: str) -> Decimal:
        """Return the volume for ``symbol`` in the exchange's native (``BTC-USDT``) form."""

        now = self._clock()
        entry = self._entries.get(symbol)
        if entry is not None and now - entry.fetched_at < self._ttl:
            return entry.volume
        try:
            volume = await self._fetch(symbol)
        except (httpx.HTTPError, ValueError, DecodeError) as exc:
            volume = entry.volume if entry is not None else Decimal(0)
            logger.warning("KuCoin volume lookup for %s failed, using %s: %s", symbol, volume, exc)
            self._entries[symbol] = _VolumeEntry(volume=volume, fetched_at=now)
            return volume
        self._entries[symbol] = _VolumeEntry(volume=volume, fetched_at=now)
        return volume

    async def _fetch(self, symbol: str) -> Decimal:
        resp = await self._client.get(self._path, params={"symbol": symbol})
        resp.raise_for_status()
        body = resp.json()
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise DecodeError(f"unexpected stats payload for {symbol}")
        return to_decimal(data.get("volValue"), field="volValue")
