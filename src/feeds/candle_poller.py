"""
Polling fallback feed for minute candles.

When no push feed is available for a source, the CandlePoller pulls the
latest bar for exactly one symbol on a fixed cadence, reports a bar only
when its timestamp changes, and stops itself after sustained failure.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from .bar_source import BarSource
from .exceptions import DataSourceError, FeedError, PollerError
from .listeners import FeedListener, ListenerGroup
from .models import Bar

logger = logging.getLogger(__name__)


@dataclass
class PollerConfig:
    """Configuration for the candle poller."""
    # Seconds between poll ticks
    poll_interval: float = 0.25

    # Historical bars loaded before polling starts
    history_count: int = 800

    # Consecutive failed ticks before the session is stopped
    max_consecutive_errors: int = 5

    granularity: str = "m1"


@dataclass
class PollerState:
    """State of the current (or most recent) poll session."""
    symbol_id: Optional[str] = None
    symbol: Optional[str] = None
    is_running: bool = False
    last_candle_timestamp: Optional[int] = None
    consecutive_error_count: int = 0


class CandlePoller:
    """
    Fixed-cadence poller for the latest candle of one symbol.

    Only one session is active per poller: ``start`` stops the previous
    session before creating a new one. A tick that comes due while the
    previous fetch is still outstanding is skipped, so fetches never
    overlap.

    Example:
        source = PolygonBarSource(api_key)
        poller = CandlePoller(source, listeners=[ChartListener()])

        await poller.start('SPY', 'SPY')
        ...
        await poller.stop()
    """

    def __init__(
        self,
        source: BarSource,
        listeners: Iterable[FeedListener] = (),
        config: Optional[PollerConfig] = None
    ):
        """
        Initialize the poller.

        Args:
            source: Data source adapter providing historical and latest bars
            listeners: Listeners that receive every poller event
            config: Poller configuration
        """
        self.source = source
        self.config = config or PollerConfig()
        self._listeners = ListenerGroup(listeners)

        self._state = PollerState()
        self._session = 0
        # Session of a start() that is still loading history
        self._pending_session: Optional[int] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._historical_bars: List[Bar] = []

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def consecutive_errors(self) -> int:
        return self._state.consecutive_error_count

    @property
    def historical_bars(self) -> List[Bar]:
        return list(self._historical_bars)

    def add_listener(self, listener: FeedListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: FeedListener) -> None:
        self._listeners.remove(listener)

    async def start(self, symbol_id: str, symbol: str, load_history: bool = True) -> bool:
        """
        Start polling a symbol.

        Args:
            symbol_id: Identifier the data source understands
            symbol: Display symbol passed to listeners
            load_history: Load historical bars before polling

        Returns:
            True if the poll loop started, False if the history bootstrap
            failed or stop() cancelled it
        """
        if self._state.is_running or self._loop_task is not None:
            logger.warning("Candle poller already running, stopping previous session")
            await self.stop("Restarting poller")

        self._session += 1
        session = self._session
        self._state = PollerState(symbol_id=symbol_id, symbol=symbol)
        self._historical_bars = []

        logger.info(f"Starting candle poller for {symbol} (ID: {symbol_id})")

        if load_history:
            self._pending_session = session
            try:
                loaded = await self._load_history(session, symbol_id, symbol)
            finally:
                if self._pending_session == session:
                    self._pending_session = None
            if not loaded:
                return False

        self._state.is_running = True
        await self._listeners.emit("on_connected")

        if not self._is_current(session):
            return True

        self._loop_task = asyncio.create_task(self._run(session))
        logger.info(f"Candle poller started (polling every {self.config.poll_interval * 1000:.0f}ms)")
        return True

    async def _load_history(self, session: int, symbol_id: str, symbol: str) -> bool:
        """Bootstrap historical bars; False if the start must not proceed."""
        try:
            bars = await self.source.get_historical_bars(
                symbol_id, self.config.granularity, self.config.history_count
            )
        except Exception as e:
            if session != self._session:
                return False
            logger.error(f"Error loading historical candles: {e}")
            self._clear_symbol()
            error = e if isinstance(e, FeedError) else DataSourceError(
                f"Failed to load historical candles: {e}"
            )
            await self._listeners.emit("on_error", error)
            return False

        if session != self._session:
            # Stopped or superseded by another start() while loading
            return False

        if not bars:
            logger.error(f"Failed to load historical candles for {symbol}: no data")
            self._clear_symbol()
            await self._listeners.emit(
                "on_error",
                DataSourceError("Failed to load historical candles: no data")
            )
            return False

        self._historical_bars = list(bars)
        self._state.last_candle_timestamp = self._historical_bars[-1].start_time
        logger.info(f"Loaded {len(self._historical_bars)} historical candles for {symbol}")

        await self._listeners.emit("on_initial_load", list(self._historical_bars))
        return session == self._session

    async def stop(self, reason: str = "Stopped by user") -> None:
        """
        Stop the active session.

        Fires on_disconnected once with ``reason``. Without an active
        session this is a no-op. A start() still loading history is
        cancelled instead and returns False.
        """
        if self._pending_session is not None:
            self._pending_session = None
            self._session += 1
            self._clear_symbol()
            logger.info(f"Candle poller start cancelled: {reason}")
            return

        if not self._state.is_running and self._loop_task is None:
            return

        self._state.is_running = False
        # Results of fetches still in flight belong to a dead session
        self._session += 1

        loop_task, self._loop_task = self._loop_task, None
        await self._cancel_task(loop_task)

        inflight, self._inflight = self._inflight, None
        await self._cancel_task(inflight)

        self._clear_symbol()

        logger.info(f"Candle poller stopped: {reason}")
        await self._listeners.emit("on_disconnected", reason)

    async def _run(self, session: int) -> None:
        """Tick loop: poll now, then every poll_interval until stopped."""
        try:
            while self._is_current(session):
                self._schedule_poll(session)
                await asyncio.sleep(self.config.poll_interval)
        except asyncio.CancelledError:
            logger.debug("Poll loop cancelled")
            raise

    def _schedule_poll(self, session: int) -> None:
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Previous poll still in flight, skipping tick")
            return
        self._inflight = asyncio.create_task(self.poll(session))

    async def poll(self, session: Optional[int] = None) -> None:
        """Fetch the latest bar once and report it if its timestamp is new."""
        session = self._session if session is None else session
        if not self._is_current(session):
            return

        state = self._state
        try:
            bar = await self.source.get_latest_bar(state.symbol_id, self.config.granularity)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._is_current(session):
                return
            await self._record_failure(e)
            return

        if not self._is_current(session):
            return

        state.consecutive_error_count = 0

        if bar is None:
            return

        if bar.start_time != state.last_candle_timestamp:
            state.last_candle_timestamp = bar.start_time
            await self._listeners.emit("on_minute_bar", state.symbol, bar)

    async def _record_failure(self, error: Exception) -> None:
        state = self._state
        state.consecutive_error_count += 1
        count = state.consecutive_error_count
        limit = self.config.max_consecutive_errors
        logger.error(f"Poll error ({count}/{limit}): {error}")

        if count >= limit:
            logger.error("Too many consecutive errors, stopping poller")
            await self.stop("Too many consecutive errors")
            await self._listeners.emit("on_error", PollerError(consecutive_errors=count))

    def _is_current(self, session: int) -> bool:
        return session == self._session and self._state.is_running

    def _clear_symbol(self) -> None:
        self._state.symbol_id = None
        self._state.symbol = None

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def get_status(self) -> Dict[str, Any]:
        """
        Get the current status of the poller.

        Returns:
            Dictionary with the session state and configuration
        """
        status = asdict(self._state)
        status.update({
            "poll_interval": self.config.poll_interval,
            "historical_bars": len(self._historical_bars),
        })
        return status
