from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

PriceLevel = tuple[Any, Any]
PriceLevels = tuple[PriceLevel, ...]


class LevelFormatError(ValueError):
    """Raised when a bids/asks side is not a non-empty sequence of (price, size) pairs."""


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return float(normalized)
        except ValueError:
            return None
    return None


def normalize_levels(value: Any, *, side: str) -> PriceLevels:
    """Validate one book side and return it as delivered, converted to a tuple of pairs.

    Prices and sizes keep the feed's own representation (Binance sends decimal strings);
    they only have to be numeric.
    """
    if not isinstance(value, (list, tuple)) or not value:
        raise LevelFormatError(f"{side} must be a non-empty list of [price, size] pairs")

    levels: list[PriceLevel] = []
    for index, level in enumerate(value):
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            raise LevelFormatError(f"{side}[{index}] is not a [price, size] pair")
        price, size = level[0], level[1]
        if coerce_float(price) is None or coerce_float(size) is None:
            raise LevelFormatError(f"{side}[{index}] has a non-numeric price or size")
        levels.append((price, size))
    return tuple(levels)


def levels_to_json(levels: PriceLevels) -> str:
    return json.dumps([list(level) for level in levels], separators=(",", ":"))


def levels_from_json(raw: str) -> PriceLevels:
    return tuple((level[0], level[1]) for level in json.loads(raw))


@dataclass(frozen=True, slots=True)
class OrderBookSnapshot:
    timestamp: datetime
    bids: PriceLevels
    asks: PriceLevels

    def best_bid(self) -> float | None:
        prices = [price for price in (coerce_float(level[0]) for level in self.bids) if price is not None]
        return max(prices) if prices else None

    def best_ask(self) -> float | None:
        prices = [price for price in (coerce_float(level[0]) for level in self.asks) if price is not None]
        return min(prices) if prices else None
