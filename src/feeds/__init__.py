"""
Feeds module for live market data.

This module provides two interchangeable sources of live bars:
- A reconnecting streaming client for push feeds (trades, second and
  minute aggregates)
- A polling fallback that pulls the latest candle on a fixed cadence

Classes:
    StreamingFeedClient: WebSocket client with backoff and subscription replay
    CandlePoller: Fixed-cadence latest-candle poller
    PolygonBarSource: REST adapter for historical and latest bars
    FeedListener: Base class for feed event consumers

Example:
    from feeds import StreamingFeedClient, FeedListener

    class ChartListener(FeedListener):
        def on_minute_bar(self, symbol, bar):
            print(symbol, bar.close)

    client = StreamingFeedClient(api_key, listeners=[ChartListener()])
    await client.subscribe('SPY')
"""

from .bar_source import BarSource, PolygonBarSource
from .candle_poller import CandlePoller, PollerConfig, PollerState
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    DataSourceError,
    FeedError,
    MaxRetriesExceededError,
    PollerError,
    TransportError,
)
from .listeners import FeedListener, ListenerGroup
from .models import Bar, BarInterval, Trade
from .stream_client import (
    EXCLUDED_CONDITIONS,
    ConnectionState,
    ReconnectConfig,
    StreamingFeedClient,
)

__all__ = [
    'StreamingFeedClient',
    'ConnectionState',
    'ReconnectConfig',
    'EXCLUDED_CONDITIONS',
    'CandlePoller',
    'PollerConfig',
    'PollerState',
    'BarSource',
    'PolygonBarSource',
    'FeedListener',
    'ListenerGroup',
    'Bar',
    'BarInterval',
    'Trade',
    'FeedError',
    'ConfigurationError',
    'AuthenticationError',
    'TransportError',
    'MaxRetriesExceededError',
    'DataSourceError',
    'PollerError',
]

__version__ = '1.0.0'
