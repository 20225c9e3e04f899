from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import DecodeError
from .symbols import normalize_symbol

# Exchange names keep their display casing ("Binance", "KuCoin"); they are part
# of cache keys and topics.
ExchangeName = str
Symbol = str  # "BTCUSDT"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_millis(value: Any) -> datetime | None:
    """Convert an epoch-milliseconds value to an aware UTC datetime."""

    if isinstance(value, bool):
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    if millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class _MarketEvent(_Frozen):
    symbol: Symbol = Field(alias="Symbol")
    exchange: ExchangeName = Field(alias="Exchange")
    timestamp: datetime = Field(default_factory=utc_now, alias="Timestamp")

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        normalized = normalize_symbol(value)
        if not normalized:
            raise ValueError("symbol must not be empty")
        return normalized

    @field_validator("exchange")
    @classmethod
    def _require_exchange(cls, value: str) -> str:
        value = str(value).strip()
        if not value:
            raise ValueError("exchange must not be empty")
        return value

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Ticker(_MarketEvent):
    kind: Literal["ticker"] = Field(default="ticker", alias="Type")
    price: Decimal = Field(alias="Price")
    volume: Decimal = Field(alias="Volume")


class OrderBookEntry(_Frozen):
    price: Decimal = Field(alias="Price")
    quantity: Decimal = Field(alias="Quantity")


class OrderBook(_MarketEvent):
    kind: Literal["orderbook"] = Field(default="orderbook", alias="Type")
    bids: Tuple[OrderBookEntry, ...] = Field(default=(), alias="Bids")
    asks: Tuple[OrderBookEntry, ...] = Field(default=(), alias="Asks")


MarketEvent = Union[Ticker, OrderBook]


class ConnectionStatus(str, Enum):
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"


class ExchangeStatus(_Frozen):
    status: ConnectionStatus = Field(alias="Status")
    last_update: datetime = Field(default_factory=utc_now, alias="LastUpdate")


class AggregatedTicker(_Frozen):
    symbol: Symbol = Field(alias="Symbol")
    average_price: Decimal = Field(alias="AveragePrice")
    total_volume: Decimal = Field(alias="TotalVolume")
    min_price: Decimal = Field(alias="MinPrice")
    max_price: Decimal = Field(alias="MaxPrice")
    timestamp: datetime = Field(alias="Timestamp")
    exchanges_count: int = Field(alias="ExchangesCount")


class BestOrderBook(_Frozen):
    symbol: Symbol = Field(alias="Symbol")
    best_bid: Optional[OrderBookEntry] = Field(default=None, alias="BestBid")
    best_ask: Optional[OrderBookEntry] = Field(default=None, alias="BestAsk")
    timestamp: datetime = Field(default_factory=utc_now, alias="Timestamp")


_EVENT_TYPES: dict[str, type[Ticker] | type[OrderBook]] = {
    "ticker": Ticker,
    "orderbook": OrderBook,
}


def classify_payload(payload: Mapping[str, Any]) -> str | None:
    """Return ``"ticker"``/``"orderbook"`` for a decoded queue payload.

    The explicit ``Type`` tag wins. Untagged payloads fall back to the field
    shape: ``Price`` + ``Volume`` is a ticker, ``Bids`` + ``Asks`` an order book.
    """

    tag = payload.get("Type")
    if isinstance(tag, str):
        kind = tag.strip().lower().replace("-", "").replace("_", "")
        return kind if kind in _EVENT_TYPES else None
    if "Price" in payload and "Volume" in payload:
        return "ticker"
    if "Bids" in payload and "Asks" in payload:
        return "orderbook"
    return None


def decode_event(raw: str | bytes | bytearray) -> MarketEvent:
    """Decode a queue payload into a :class:`Ticker` or :class:`OrderBook`.

    Raises :class:`DecodeError` for invalid JSON, unknown shapes and payloads
    failing validation.
    """

    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DecodeError("payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise DecodeError("payload is not a JSON object")
    kind = classify_payload(payload)
    if kind is None:
        raise DecodeError("unrecognized payload shape")
    try:
        return _EVENT_TYPES[kind].model_validate({**payload, "Type": kind})
    except ValidationError as exc:
        raise DecodeError(f"invalid {kind} payload ({exc.error_count()} error(s))") from exc
