"""Shared fakes for the feed and signal tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
from websockets.exceptions import ConnectionClosedError

from feeds.bar_source import BarSource
from feeds.listeners import FeedListener
from feeds.models import Bar


_CLOSE = object()


class FakeTransport:
    """In-memory stand-in for a websocket connection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            raise ConnectionClosedError(None, None)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSE)

    def push(self, payload: Any) -> None:
        """Queue a server frame; non-strings are JSON encoded."""
        self._inbox.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbox.put_nowait(_CLOSE)


class TransportFactory:
    """Hands out FakeTransports, or raises for scripted failures."""

    def __init__(self, failures: int = 0, always_fail: bool = False, gate: Optional[asyncio.Event] = None):
        self.failures = failures
        self.always_fail = always_fail
        # Opens block until the gate is set
        self.gate = gate
        self.calls = 0
        self.transports: List[FakeTransport] = []

    async def __call__(self, url: str) -> FakeTransport:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail or self.calls <= self.failures:
            raise OSError("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]

    @property
    def open_transports(self) -> List[FakeTransport]:
        return [t for t in self.transports if not t.closed]


class RecordingListener(FeedListener):
    """Records every event it receives, in order."""

    def __init__(self):
        self.events: List[Tuple[str, tuple]] = []

    def _record(self, name: str, *args) -> None:
        self.events.append((name, args))

    def on_trade(self, symbol, price, trade):
        self._record("on_trade", symbol, price, trade)

    def on_minute_bar(self, symbol, bar):
        self._record("on_minute_bar", symbol, bar)

    def on_second_bar(self, symbol, bar):
        self._record("on_second_bar", symbol, bar)

    def on_initial_load(self, bars):
        self._record("on_initial_load", bars)

    def on_connected(self):
        self._record("on_connected")

    def on_disconnected(self, reason):
        self._record("on_disconnected", reason)

    def on_error(self, error):
        self._record("on_error", error)

    def of(self, name: str) -> List[tuple]:
        return [args for event, args in self.events if event == name]

    def names(self) -> List[str]:
        return [event for event, _ in self.events]


class ScriptedBarSource(BarSource):
    """
    Bar source returning scripted results.

    ``latest`` items are returned in order (the last one repeats); an
    Exception item is raised instead of returned. ``history_gate`` holds
    the history fetch until set; ``latest_delay`` slows every latest-bar
    fetch down.
    """

    def __init__(
        self,
        history: Any = (),
        latest: Sequence[Any] = (None,),
        history_gate: Optional[asyncio.Event] = None,
        latest_delay: float = 0.0,
    ):
        self.history = history
        self.latest = list(latest)
        self.history_gate = history_gate
        self.latest_delay = latest_delay
        self.history_calls = 0
        self.latest_calls = 0
        self.active_fetches = 0
        self.max_active_fetches = 0

    async def get_historical_bars(self, symbol_id: str, granularity: str = "m1", count: int = 390) -> List[Bar]:
        self.history_calls += 1
        if self.history_gate is not None:
            await self.history_gate.wait()
        if isinstance(self.history, Exception):
            raise self.history
        return list(self.history)

    async def get_latest_bar(self, symbol_id: str, granularity: str = "m1") -> Optional[Bar]:
        self.latest_calls += 1
        index = min(self.latest_calls - 1, len(self.latest) - 1)
        result = self.latest[index]

        self.active_fetches += 1
        self.max_active_fetches = max(self.max_active_fetches, self.active_fetches)
        try:
            if self.latest_delay:
                await asyncio.sleep(self.latest_delay)
        finally:
            self.active_fetches -= 1

        if isinstance(result, Exception):
            raise result
        return result


class ManualClock:
    """Clock returning a settable epoch-milliseconds value."""

    def __init__(self, now_ms: float = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


def make_bar(start_time: int, close: float = 100.0, symbol: str = "SPY") -> Bar:
    return Bar(
        symbol=symbol,
        start_time=start_time,
        open=close,
        high=close + 0.5,
        low=close - 0.5,
        close=close,
        volume=1000,
    )


async def drain(iterations: int = 20) -> None:
    """Let pending tasks on the loop run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def clock():
    return ManualClock()
