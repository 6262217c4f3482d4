"""
Listener contract shared by the streaming and polling feeds.

Hosts subclass FeedListener and override the events they care about.
Every registered listener receives every event, in the order the feed
produced them. Listener methods may be plain functions or coroutines.
"""

import asyncio
import logging
from typing import Iterable, List, Sequence

from .models import Bar, Trade

logger = logging.getLogger(__name__)


class FeedListener:
    """
    Base listener with no-op handlers for every feed event.

    Example:
        class PrintListener(FeedListener):
            def on_trade(self, symbol, price, trade):
                print(f"{symbol}: {price}")

        client = StreamingFeedClient(api_key, listeners=[PrintListener()])
    """

    def on_trade(self, symbol: str, price: float, trade: Trade) -> None:
        pass

    def on_minute_bar(self, symbol: str, bar: Bar) -> None:
        pass

    def on_second_bar(self, symbol: str, bar: Bar) -> None:
        pass

    def on_initial_load(self, bars: Sequence[Bar]) -> None:
        pass

    def on_connected(self) -> None:
        pass

    def on_disconnected(self, reason: str) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class ListenerGroup:
    """Ordered fan-out of feed events to a set of listeners."""

    def __init__(self, listeners: Iterable[FeedListener] = ()):
        self._listeners: List[FeedListener] = list(listeners)

    def add(self, listener: FeedListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: FeedListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    async def emit(self, event: str, *args) -> None:
        """
        Deliver an event to every listener.

        A failing listener is logged and skipped; it never interrupts
        delivery to the others or propagates into the feed.

        Args:
            event: Listener method name (e.g. 'on_trade')
            *args: Event payload
        """
        for listener in list(self._listeners):
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} listener {listener!r}: {e}")
