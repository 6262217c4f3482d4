"""
Streaming feed client for real-time trades and aggregate bars.

This module provides a WebSocket client that:
- Authenticates against a push market-data source (Polygon stocks cluster)
- Keeps a subscription set in sync with the server across reconnects
- Classifies inbound messages into trades, second bars and minute bars
- Filters non-regular prints and deduplicates unchanged trade prices
- Reconnects with bounded exponential backoff
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    MaxRetriesExceededError,
    TransportError,
)
from .listeners import FeedListener, ListenerGroup
from .models import Bar, BarInterval, Trade, is_finite_number

logger = logging.getLogger(__name__)


# Trade condition codes for prints that must not move the price:
# late and out-of-sequence reports, cancels/errors, odd lots,
# average/derivatively priced trades and similar.
EXCLUDED_CONDITIONS: FrozenSet[int] = frozenset({
    2,   # Average Price Trade
    7,   # Cash Sale
    10,  # Intermarket Sweep
    12,  # Form T (extended hours)
    14,  # Out of Sequence
    15,  # Cancelled
    16,  # Error
    21,  # Next Day
    37,  # Average Price
    38,  # Odd Lot
    41,  # Derivatively Priced
    52,  # Derivative Priced
    53,  # Re-opening Prints
    54,  # Seller
    55,  # Sold Last
    56,  # Sold Last and Stopped Stock
    57,  # Sold Out
    58,  # Sold Out of Sequence
})

# Minimum price change for a trade to be reported again
PRICE_EPSILON = 0.001


class ConnectionState(Enum):
    """Streaming connection states."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


@dataclass
class ReconnectConfig:
    """Configuration for reconnection behavior."""
    max_retries: int = 10
    base_delay: float = 1.0
    exponential_base: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff delay in seconds for a 1-indexed reconnect attempt."""
        return self.base_delay * (self.exponential_base ** (attempt - 1))


TransportFactory = Callable[[str], Awaitable[Any]]


def _now_ms() -> float:
    return time.time() * 1000


class StreamingFeedClient:
    """
    Push-feed client for a single live market-data connection.

    Features:
    - Automatic reconnection with exponential backoff
    - Subscription replay after every successful authentication
    - Bad-print filtering and price-change deduplication for trades
    - Listener fan-out for trades, bars and connection events

    Example:
        client = StreamingFeedClient(api_key, listeners=[MyListener()])

        await client.subscribe('SPY')   # connects if needed
        ...
        await client.disconnect()
    """

    WS_URL = "wss://socket.polygon.io/stocks"

    # Connection timeout (seconds)
    CONNECTION_TIMEOUT = 10.0

    # Message classes requested per symbol: minute bars, second bars, trades
    MESSAGE_CLASSES = ("AM", "A", "T")

    def __init__(
        self,
        api_key: Optional[str],
        listeners: Iterable[FeedListener] = (),
        transport_factory: Optional[TransportFactory] = None,
        reconnect_config: Optional[ReconnectConfig] = None,
        url: Optional[str] = None,
        connection_timeout: Optional[float] = None,
        price_epsilon: float = PRICE_EPSILON,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the streaming client.

        Args:
            api_key: Provider API key, sent in the auth message
            listeners: Listeners that receive every feed event
            transport_factory: Coroutine factory opening a transport for a URL
                (defaults to websockets.connect)
            reconnect_config: Reconnection configuration
            url: WebSocket endpoint
            connection_timeout: Seconds to wait for the transport to open
            price_epsilon: Minimum trade price change that is reported
            clock: Returns the current time in epoch milliseconds
        """
        self.api_key = api_key
        self.reconnect_config = reconnect_config or ReconnectConfig()
        self.url = url or self.WS_URL
        self.connection_timeout = connection_timeout or self.CONNECTION_TIMEOUT
        self.price_epsilon = price_epsilon

        self._transport_factory = transport_factory or websockets.connect
        self._clock = clock or _now_ms
        self._listeners = ListenerGroup(listeners)

        # Transport
        self._ws = None
        self._state = ConnectionState.IDLE

        # Subscription management
        self._subscriptions: Set[str] = set()

        # Background tasks
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # Reconnection state
        self._reconnect_attempts = 0
        self._reconnect_delay = self.reconnect_config.base_delay
        self._should_reconnect = True

        # Bumped by disconnect(); opens from an older session are discarded
        self._session = 0

        # Dedup and latency tracking
        self._last_prices: Dict[str, float] = {}
        self._latency_ms: float = 0.0
        self._last_trade_time: Optional[float] = None

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._state == ConnectionState.CONNECTED and self._ws is not None

    @property
    def subscriptions(self) -> FrozenSet[str]:
        return frozenset(self._subscriptions)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_delay(self) -> float:
        """Delay (seconds) used for the most recently scheduled reconnect."""
        return self._reconnect_delay

    @property
    def latency_ms(self) -> float:
        return self._latency_ms

    def add_listener(self, listener: FeedListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: FeedListener) -> None:
        self._listeners.remove(listener)

    # Connection management

    async def connect(self) -> None:
        """
        Open the connection and authenticate.

        Reports a ConfigurationError through on_error when no API key is
        set. Does nothing while a connection is live or an attempt is
        already in flight or scheduled. An attempt still opening when
        disconnect() is called is closed as soon as it completes.
        """
        if not self.api_key or not str(self.api_key).strip():
            logger.error("Cannot connect: no API key configured")
            await self._listeners.emit(
                "on_error",
                ConfigurationError("No API key configured for the streaming feed")
            )
            return

        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        ):
            logger.debug(f"Connect ignored, client is {self._state.value}")
            return

        self._should_reconnect = True
        self._reconnect_attempts = 0
        self._reconnect_delay = self.reconnect_config.base_delay

        await self._open()

    async def disconnect(self) -> None:
        """
        Close the connection and stop reconnecting.

        This method will:
        - Disable reconnection
        - Cancel the pending reconnect timer and the receive loop
        - Close the transport and clear all subscriptions
        """
        logger.info("Disconnecting streaming feed")

        self._should_reconnect = False
        self._session += 1
        was_connected = self.is_connected

        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None

        await self._cancel_task(self._receive_task)
        self._receive_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_transport(ws)

        self._subscriptions.clear()
        self._set_state(ConnectionState.IDLE)

        if was_connected:
            await self._listeners.emit("on_disconnected", "Disconnected by client")

        logger.info("Streaming feed disconnected")

    async def _open(self) -> None:
        """Single connection attempt."""
        session = self._session
        self._set_state(ConnectionState.CONNECTING)

        try:
            logger.info(f"Connecting to {self.url}")
            ws = await asyncio.wait_for(
                self._transport_factory(self.url),
                timeout=self.connection_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to connect: {e}")
            if session != self._session:
                return
            await self._handle_connection_lost(f"Connection failed: {e}", was_connected=False)
            return

        if session != self._session or not self._should_reconnect:
            # disconnect() ran while the transport was opening
            logger.debug("Discarding transport opened for a closed session")
            await self._close_transport(ws)
            return

        self._ws = ws
        self._set_state(ConnectionState.CONNECTED)
        self._reconnect_attempts = 0
        self._reconnect_delay = self.reconnect_config.base_delay
        logger.info("Streaming feed connected")

        try:
            await self._send_message({"action": "auth", "params": self.api_key})
        except Exception as e:
            logger.error(f"Failed to send auth message: {e}")

        await self._listeners.emit("on_connected")
        if self._ws is not ws:
            return

        self._receive_task = asyncio.create_task(self._receive_loop(ws))

    async def _handle_connection_lost(self, reason: str, was_connected: bool) -> None:
        """Decide between reconnecting, terminating and going idle."""
        if not self._should_reconnect:
            self._set_state(ConnectionState.IDLE)
            if was_connected:
                await self._listeners.emit("on_disconnected", reason)
            return

        max_retries = self.reconnect_config.max_retries
        if self._reconnect_attempts >= max_retries:
            self._set_state(ConnectionState.TERMINATED)
            logger.error(f"Max reconnection attempts reached ({max_retries})")
            if was_connected:
                await self._listeners.emit("on_disconnected", reason)
            await self._listeners.emit(
                "on_error",
                MaxRetriesExceededError(attempts=self._reconnect_attempts)
            )
            return

        if self._reconnect_task is not None and not self._reconnect_task.done():
            logger.debug("Reconnect already scheduled")
            return

        self._reconnect_attempts += 1
        delay = self.reconnect_config.delay_for(self._reconnect_attempts)
        self._reconnect_delay = delay
        self._set_state(ConnectionState.RECONNECTING)

        logger.info(
            f"Reconnecting in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{max_retries})"
        )
        self._reconnect_task = asyncio.create_task(self._delayed_reconnect(delay))

        if was_connected:
            await self._listeners.emit("on_disconnected", reason)

    async def _delayed_reconnect(self, delay: float) -> None:
        await asyncio.sleep(delay)

        self._reconnect_task = None
        if not self._should_reconnect:
            return

        await self._open()

    async def _receive_loop(self, ws) -> None:
        """Main receive loop for one transport."""
        reason = "Connection closed"
        try:
            while True:
                message = await ws.recv()
                await self._handle_message(message)

        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled")
            raise
        except ConnectionClosed as e:
            reason = str(e) or reason
            logger.warning(f"Connection closed: {reason}")
        except Exception as e:
            reason = f"Receive error: {e}"
            logger.error(reason)

        if self._ws is not ws:
            # Superseded by disconnect()
            return

        self._ws = None
        self._receive_task = None
        await self._handle_connection_lost(reason, was_connected=True)

    # Message handling

    async def _handle_message(self, message) -> None:
        """
        Parse and dispatch one raw transport message.

        Provider frames are JSON arrays of event objects tagged by 'ev'.

        Args:
            message: Raw message text
        """
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to parse message: {e}")
            return

        if not isinstance(data, list):
            logger.debug(f"Ignoring non-array payload: {data!r}")
            return

        for msg in data:
            if not isinstance(msg, dict):
                continue
            try:
                await self._dispatch(msg)
            except Exception as e:
                logger.error(f"Error handling {msg.get('ev')} message: {e}")

    async def _dispatch(self, msg: Dict[str, Any]) -> None:
        ev = msg.get("ev")
        if not ev:
            return

        if ev == "status":
            await self._handle_status(msg)
        elif ev == "T":
            await self._handle_trade(msg)
        elif ev == "A":
            await self._handle_aggregate(msg, BarInterval.SECOND)
        elif ev == "AM":
            await self._handle_aggregate(msg, BarInterval.MINUTE)
        else:
            logger.warning(f"Unknown message type: {ev}")

    async def _handle_status(self, msg: Dict[str, Any]) -> None:
        status = msg.get("status")
        logger.info(f"Provider status: {status} - {msg.get('message')}")

        if status == "auth_success":
            if self._subscriptions:
                logger.info(f"Resubscribing to {len(self._subscriptions)} symbols")
            for symbol in sorted(self._subscriptions):
                await self._send_subscription("subscribe", symbol)

        elif status == "auth_failed":
            self._should_reconnect = False
            await self._listeners.emit(
                "on_error",
                AuthenticationError(msg.get("message") or "Authentication failed")
            )
            if self._ws is not None:
                await self._close_transport(self._ws)

    async def _handle_trade(self, msg: Dict[str, Any]) -> None:
        """Handle a trade print: filter, deduplicate, deliver."""
        symbol = msg.get("sym")
        price = msg.get("p")
        if not symbol or not is_finite_number(price) or price <= 0:
            return

        now = self._clock()
        timestamp = msg.get("t")
        latency = now - timestamp if is_finite_number(timestamp) else None
        if latency is not None:
            self._latency_ms = latency

        conditions = frozenset(c for c in (msg.get("c") or []) if isinstance(c, int))
        if conditions & EXCLUDED_CONDITIONS:
            return

        self._last_trade_time = now

        last_price = self._last_prices.get(symbol)
        if last_price is not None and abs(price - last_price) <= self.price_epsilon:
            return

        self._last_prices[symbol] = price

        trade = Trade(
            symbol=symbol,
            price=price,
            size=msg.get("s") or 0,
            timestamp_ms=timestamp,
            condition_codes=conditions,
            exchange_id=msg.get("x"),
            latency_ms=latency,
        )
        logger.debug(f"{symbol}: {price} | size {trade.size} | latency {latency}ms")

        await self._listeners.emit("on_trade", symbol, price, trade)

    async def _handle_aggregate(self, msg: Dict[str, Any], interval: BarInterval) -> None:
        """Handle a second or minute aggregate bar."""
        symbol = msg.get("sym")
        if not symbol:
            return

        start_ms = msg.get("s")
        if not is_finite_number(start_ms):
            logger.warning(f"Invalid {interval.value} bar start for {symbol}: {msg}")
            return

        # Bucket start is already aligned to the provider's minute grid
        bar = Bar(
            symbol=symbol,
            start_time=int(start_ms // 1000),
            open=msg.get("o"),
            high=msg.get("h"),
            low=msg.get("l"),
            close=msg.get("c"),
            volume=msg.get("v") or 0,
            vwap=msg.get("vw"),
            trade_count=msg.get("n"),
        )

        if not bar.is_valid():
            logger.warning(f"Invalid {interval.value} bar data for {symbol}: {msg}")
            return

        end_ms = msg.get("e")
        if is_finite_number(end_ms):
            self._latency_ms = self._clock() - end_ms

        self._last_prices[symbol] = bar.close

        event = "on_minute_bar" if interval is BarInterval.MINUTE else "on_second_bar"
        await self._listeners.emit(event, symbol, bar)

    # Subscription methods

    async def subscribe(self, symbol: str) -> None:
        """
        Subscribe to trades, second bars and minute bars for a symbol.

        When not connected the symbol is queued and a connection is
        started; the whole subscription set is sent after authentication.

        Args:
            symbol: Ticker symbol (e.g., 'SPY')
        """
        clean = self._normalize_symbol(symbol)
        if not clean:
            return

        self._subscriptions.add(clean)

        if self.is_connected:
            logger.info(f"Subscribing to real-time data for {clean}")
            await self._send_subscription("subscribe", clean)
        else:
            logger.info(f"Queued subscription for {clean} (will subscribe when connected)")
            if self._state not in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
                await self.connect()

    async def unsubscribe(self, symbol: str) -> None:
        """Remove a symbol from the subscription set."""
        clean = self._normalize_symbol(symbol)
        if not clean:
            return

        self._subscriptions.discard(clean)
        self._last_prices.pop(clean, None)

        if self.is_connected:
            logger.info(f"Unsubscribing from {clean}")
            await self._send_subscription("unsubscribe", clean)

    def subscription_params(self, symbol: str) -> str:
        """Wire parameter string for all message classes of a symbol."""
        return ",".join(f"{cls}.{symbol}" for cls in self.MESSAGE_CLASSES)

    async def _send_subscription(self, action: str, symbol: str) -> None:
        try:
            await self._send_message({"action": action, "params": self.subscription_params(symbol)})
        except Exception as e:
            # The set is replayed on the next auth_success
            logger.warning(f"Failed to {action} {symbol}: {e}")

    # Helper methods

    async def _send_message(self, message: Dict) -> None:
        """Send a message to the server."""
        if self._ws is None:
            raise TransportError("Not connected")

        await self._ws.send(json.dumps(message))

    async def _close_transport(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.error(f"Error closing transport: {e}")

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _set_state(self, state: ConnectionState) -> None:
        old_state = self._state
        self._state = state
        if old_state != state:
            logger.debug(f"State changed: {old_state.value} -> {state.value}")

    @staticmethod
    def _normalize_symbol(symbol: Optional[str]) -> str:
        if not symbol:
            return ""
        return str(symbol).strip().upper()

    # Public getters

    def get_last_price(self, symbol: str) -> Optional[float]:
        """Last accepted trade price or bar close for a symbol."""
        return self._last_prices.get(self._normalize_symbol(symbol))

    def get_status(self) -> Dict[str, Any]:
        """
        Get the current status of the client.

        Returns:
            Dictionary with connection flags, subscriptions and latency
        """
        return {
            "connected": self.is_connected,
            "connecting": self._state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING),
            "state": self._state.value,
            "subscriptions": sorted(self._subscriptions),
            "latency_ms": self._latency_ms,
            "last_trade_time_ms": self._last_trade_time,
            "reconnect_attempts": self._reconnect_attempts,
        }
