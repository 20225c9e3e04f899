from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Tuple

from ..domain import OrderBookEntry
from ..errors import DecodeError


def decode_frame(raw: Any) -> dict | None:
    """Decode a text/binary websocket frame into a JSON object, ``None`` if it is not one."""

    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return message if isinstance(message, dict) else None


def to_decimal(value: Any, *, field: str = "value") -> Decimal:
    if isinstance(value, bool) or value is None:
        raise DecodeError(f"{field} is missing")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise DecodeError(f"{field} is not numeric: {value!r}") from exc
    if not number.is_finite():
        raise DecodeError(f"{field} is not finite: {value!r}")
    return number


def optional_decimal(value: Any) -> Decimal | None:
    try:
        return to_decimal(value)
    except DecodeError:
        return None


def parse_levels(levels: Iterable[Any] | None, *, side: str) -> Tuple[OrderBookEntry, ...]:
    """Convert ``[[price, qty], ...]`` into order-book entries.

    A malformed level fails the whole snapshot: a book with holes in it is
    worse than skipping one update.
    """

    if levels is None:
        return ()
    out = []
    for level in levels:
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            raise DecodeError(f"malformed {side} level: {level!r}")
        out.append(
            OrderBookEntry(
                price=to_decimal(level[0], field=f"{side} price"),
                quantity=to_decimal(level[1], field=f"{side} quantity"),
            )
        )
    return tuple(out)
