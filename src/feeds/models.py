"""
Data containers for normalized market data.

Both feeds convert provider payloads into these shapes before handing
them to listeners:
- Trade: a single accepted print from the streaming feed
- Bar: an OHLCV summary for a second or minute bucket
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional


class BarInterval(Enum):
    """Granularity of a bar."""
    SECOND = "second"
    MINUTE = "minute"


def is_finite_number(value) -> bool:
    """Return True if value is a real number that is neither NaN nor infinite."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


@dataclass(frozen=True)
class Bar:
    """
    Container for OHLCV candlestick data.

    ``start_time`` is the bucket start in epoch seconds. A newer bar with
    the same ``start_time`` for the same symbol is a correction and
    replaces the earlier one.
    """
    symbol: str
    start_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    vwap: Optional[float] = None
    trade_count: Optional[int] = None

    def is_valid(self) -> bool:
        """Check that all four OHLC prices are finite."""
        return all(
            is_finite_number(v)
            for v in (self.open, self.high, self.low, self.close)
        )


@dataclass(frozen=True)
class Trade:
    """Container for an individual trade print."""
    symbol: str
    price: float
    size: float
    timestamp_ms: int
    condition_codes: FrozenSet[int] = field(default_factory=frozenset)
    exchange_id: Optional[int] = None
    latency_ms: Optional[float] = None
