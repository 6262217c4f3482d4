"""
Request/response bar sources for the polling feed.

BarSource is the adapter contract the CandlePoller pulls from.
PolygonBarSource implements it over the Polygon aggregates REST API.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from dateutil import tz

from .exceptions import ConfigurationError, DataSourceError
from .models import Bar, is_finite_number

logger = logging.getLogger(__name__)

EASTERN = tz.gettz("America/New_York")

# granularity -> (multiplier, timespan, calendar days to request)
GRANULARITIES: Dict[str, Tuple[int, str, int]] = {
    "m1": (1, "minute", 2),
    "m5": (5, "minute", 5),
    "m15": (15, "minute", 10),
    "m30": (30, "minute", 15),
    "h1": (1, "hour", 30),
    "d1": (1, "day", 100),
}


class BarSource(ABC):
    """Adapter contract for pulling bars from a request/response source."""

    @abstractmethod
    async def get_historical_bars(
        self,
        symbol_id: str,
        granularity: str,
        count: int
    ) -> List[Bar]:
        """Return up to ``count`` most recent bars, oldest first."""

    @abstractmethod
    async def get_latest_bar(self, symbol_id: str, granularity: str) -> Optional[Bar]:
        """Return the most recent bar, or None when the source has none."""

    async def close(self) -> None:
        pass


class PolygonBarSource(BarSource):
    """
    Polygon.io aggregates client.

    Intraday requests cover yesterday and today in US/Eastern so that the
    previous session is always present; minute ranges are padded by three
    days to bridge weekends.

    Example:
        async with PolygonBarSource(api_key) as source:
            bars = await source.get_historical_bars('SPY', 'm1', 800)
            latest = await source.get_latest_bar('SPY', 'm1')
    """

    BASE_URL = "https://api.polygon.io"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the REST source.

        Args:
            api_key: Polygon API key, sent as the apiKey query parameter
            base_url: API root
            timeout: Total request timeout in seconds
            session: Existing aiohttp session (not closed by this object)
        """
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "PolygonBarSource":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET a JSON document from the API.

        Raises:
            ConfigurationError: If no API key is set
            DataSourceError: On HTTP status >= 400 or transport failure
        """
        if not self.api_key:
            raise ConfigurationError("No API key configured for the REST data source")

        url = f"{self.base_url}{path}"
        query = dict(params or {})
        query["apiKey"] = self.api_key

        session = await self._get_session()
        logger.debug(f"GET {url}")
        try:
            async with session.get(url, params=query) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise DataSourceError(
                        f"HTTP {response.status}: {body[:200]}",
                        status=response.status
                    )
                return await response.json()
        except DataSourceError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataSourceError(f"Request to {path} failed: {e}") from e

    async def get_historical_bars(
        self,
        symbol_id: str,
        granularity: str = "m1",
        count: int = 390
    ) -> List[Bar]:
        symbol = self._clean_symbol(symbol_id)
        mult, span, days = self.resolve_granularity(granularity, count)
        start, end = self.date_range(days, pad_weekend=granularity in ("m1", "m5"))

        data = await self._request(
            f"/v2/aggs/ticker/{symbol}/range/{mult}/{span}/{start}/{end}",
            {"limit": 50000, "sort": "asc", "adjusted": "true"}
        )

        bars = self.parse_aggregates(symbol, data)
        bars.sort(key=lambda b: b.start_time)
        if len(bars) > count:
            bars = bars[-count:]

        logger.debug(f"Fetched {len(bars)} {granularity} bars for {symbol}")
        return bars

    async def get_latest_bar(self, symbol_id: str, granularity: str = "m1") -> Optional[Bar]:
        symbol = self._clean_symbol(symbol_id)
        mult, span, _ = self.resolve_granularity(granularity)
        start, end = self.date_range(1, pad_weekend=True)

        data = await self._request(
            f"/v2/aggs/ticker/{symbol}/range/{mult}/{span}/{start}/{end}",
            {"limit": 1, "sort": "desc", "adjusted": "true"}
        )

        bars = self.parse_aggregates(symbol, data)
        if not bars:
            return None
        return max(bars, key=lambda b: b.start_time)

    async def get_previous_day_ohlc(self, symbol_id: str) -> Optional[Dict[str, float]]:
        """
        Previous regular session OHLC.

        Returns:
            Dict with open/high/low/close, or None if unavailable
        """
        symbol = self._clean_symbol(symbol_id)
        data = await self._request(f"/v2/aggs/ticker/{symbol}/prev")

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or not results:
            return None

        r = results[0]
        ohlc = {"open": r.get("o"), "high": r.get("h"), "low": r.get("l"), "close": r.get("c")}
        if not all(is_finite_number(v) for v in ohlc.values()):
            return None
        return ohlc

    @staticmethod
    def resolve_granularity(granularity: str, count: int = 0) -> Tuple[int, str, int]:
        """Map a granularity code to (multiplier, timespan, days to fetch)."""
        if granularity == "1d":
            granularity = "d1"
        mult, span, days = GRANULARITIES.get(granularity, GRANULARITIES["m1"])
        if span == "day":
            days = max(count, days)
        return mult, span, days

    @staticmethod
    def date_range(days: int, pad_weekend: bool = False, now: Optional[datetime] = None) -> Tuple[str, str]:
        """Inclusive (from, to) dates in US/Eastern covering ``days`` back."""
        now_et = now.astimezone(EASTERN) if now else datetime.now(EASTERN)
        if pad_weekend:
            days += 3
        start = now_et - timedelta(days=days)
        return start.strftime("%Y-%m-%d"), now_et.strftime("%Y-%m-%d")

    @staticmethod
    def parse_aggregates(symbol: str, data: Any) -> List[Bar]:
        """Convert an aggregates response into bars, skipping malformed rows."""
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []

        bars = []
        for r in results:
            if not isinstance(r, dict) or not is_finite_number(r.get("t")):
                continue
            bar = Bar(
                symbol=symbol,
                start_time=int(r["t"] // 1000),
                open=r.get("o"),
                high=r.get("h"),
                low=r.get("l"),
                close=r.get("c"),
                volume=r.get("v") or 0,
                vwap=r.get("vw"),
                trade_count=r.get("n"),
            )
            if bar.is_valid():
                bars.append(bar)
        return bars

    @staticmethod
    def _clean_symbol(symbol_id: str) -> str:
        if not symbol_id:
            raise DataSourceError("A symbol is required")
        return str(symbol_id).strip().upper()
