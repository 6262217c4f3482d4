"""
Command-line host for the live feeds.

Loads configuration, sets up logging, and runs either the streaming
client or the candle poller for one symbol until SIGINT/SIGTERM.

Usage:
    effective-delta-feed --config config/config.yaml
    effective-delta-feed --symbol QQQ --mode poll --log-level DEBUG
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from config import FeedConfig, FeedMode, LogLevel, load_config
from signals import EffectiveDeltaEngine
from utils import LogCategory, get_logger, setup_logging, shutdown_logging

from .bar_source import PolygonBarSource
from .candle_poller import CandlePoller, PollerConfig
from .listeners import FeedListener
from .models import Bar, Trade
from .stream_client import ReconnectConfig, StreamingFeedClient

logger = get_logger(__name__)


class LoggingListener(FeedListener):
    """Logs every feed event through the category logger."""

    def __init__(self, category: LogCategory):
        self.category = category
        self.bars_received = 0
        self.trades_received = 0

    def on_trade(self, symbol: str, price: float, trade: Trade) -> None:
        self.trades_received += 1
        logger.log_feed_event(self.category, {
            'event_type': 'trade',
            'symbol': symbol,
            'price': price,
            'size': trade.size,
            'latency_ms': trade.latency_ms,
        }, level=logging.DEBUG)

    def on_minute_bar(self, symbol: str, bar: Bar) -> None:
        self.bars_received += 1
        logger.log_feed_event(self.category, {
            'event_type': 'minute_bar',
            'symbol': symbol,
            'start_time': bar.start_time,
            'close': bar.close,
            'volume': bar.volume,
        }, msg=f"{symbol} minute bar @ {bar.start_time}: close={bar.close}")

    def on_second_bar(self, symbol: str, bar: Bar) -> None:
        logger.log_feed_event(self.category, {
            'event_type': 'second_bar',
            'symbol': symbol,
            'start_time': bar.start_time,
            'close': bar.close,
        }, level=logging.DEBUG)

    def on_initial_load(self, bars: Sequence[Bar]) -> None:
        logger.log_feed_event(self.category, {
            'event_type': 'initial_load',
            'count': len(bars),
            'first': bars[0].start_time if bars else None,
            'last': bars[-1].start_time if bars else None,
        }, msg=f"Loaded {len(bars)} historical bars")

    def on_connected(self) -> None:
        logger.log_feed_event(self.category, {'event_type': 'connected'})

    def on_disconnected(self, reason: str) -> None:
        logger.log_feed_event(
            self.category,
            {'event_type': 'disconnected', 'reason': reason},
            msg=f"Disconnected: {reason}",
            level=logging.WARNING,
        )

    def on_error(self, error: Exception) -> None:
        logger.log_feed_event(
            self.category,
            {'event_type': 'error', 'error': str(error)},
            msg=f"Feed error: {error}",
            level=logging.ERROR,
        )


class FeedRunner:
    """
    Manages the feed lifecycle and handles signals.

    The runner owns an EffectiveDeltaEngine built from the ``delta``
    settings. The feeds carry the underlying only, so option prices are
    supplied by an embedding host through ``delta_engine.add_sample``.
    """

    def __init__(self, config: FeedConfig):
        self.config = config
        self.delta_engine = EffectiveDeltaEngine.from_settings(config.delta)
        if config.logging.level == LogLevel.DEBUG:
            self.delta_engine.enable_debug()
        self.client: Optional[StreamingFeedClient] = None
        self.poller: Optional[CandlePoller] = None
        self.source: Optional[PolygonBarSource] = None
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_shutdown)
            logger.debug("Signal handlers registered")
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            logger.warning("Signal handlers not supported on this platform")

    def request_shutdown(self) -> None:
        logger.info("Shutdown signal received, stopping feed...")
        self._shutdown_event.set()

    def build_stream_client(self) -> StreamingFeedClient:
        settings = self.config.stream
        return StreamingFeedClient(
            settings.api_key,
            listeners=[LoggingListener(LogCategory.STREAM)],
            reconnect_config=ReconnectConfig(
                max_retries=settings.max_reconnect_attempts,
                base_delay=settings.base_reconnect_delay,
            ),
            url=settings.url,
            connection_timeout=settings.connection_timeout,
            price_epsilon=settings.price_epsilon,
        )

    def build_poller(self) -> CandlePoller:
        rest = self.config.rest
        settings = self.config.poller
        self.source = PolygonBarSource(rest.api_key, base_url=rest.base_url, timeout=rest.timeout)
        return CandlePoller(
            self.source,
            listeners=[LoggingListener(LogCategory.POLLER)],
            config=PollerConfig(
                poll_interval=settings.poll_interval,
                history_count=settings.history_count,
                max_consecutive_errors=settings.max_consecutive_errors,
                granularity=settings.granularity,
            ),
        )

    async def run(self) -> int:
        """
        Run the configured feed until shutdown is requested.

        Returns:
            Process exit code
        """
        symbol = self.config.symbol
        symbol_id = self.config.symbol_id or symbol

        logger.log_system_event({
            'event_type': 'startup',
            'symbol': symbol,
            'mode': self.config.mode.value,
        }, msg=f"Starting {self.config.mode.value} feed for {symbol}")

        try:
            if self.config.mode == FeedMode.STREAM:
                self.client = self.build_stream_client()
                await self.client.subscribe(symbol)
            else:
                self.poller = self.build_poller()
                if not await self.poller.start(symbol_id, symbol):
                    logger.error("Failed to start candle poller")
                    return 1

            logger.info("Feed is running. Press Ctrl+C to stop.")
            await self._shutdown_event.wait()
            return 0
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self.client is not None:
            await self.client.disconnect()
        if self.poller is not None:
            await self.poller.stop()
        if self.source is not None:
            await self.source.close()

        logger.log_signal(self.delta_engine.get_status())
        logger.log_system_event({'event_type': 'shutdown'}, msg="Feed stopped")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Live market data feed for effective delta estimation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  effective-delta-feed --config config/config.yaml
  effective-delta-feed --symbol QQQ --mode poll
  effective-delta-feed --config config/config.yaml --log-level DEBUG
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help='Path to configuration file (defaults plus environment if omitted)'
    )

    parser.add_argument(
        '--symbol',
        type=str,
        help='Symbol to watch (overrides config)'
    )

    parser.add_argument(
        '--mode',
        choices=[mode.value for mode in FeedMode],
        help='Feed mode (overrides config)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (overrides config)'
    )

    parser.add_argument(
        '--version', '-v',
        action='version',
        version='%(prog)s 1.0.0'
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> FeedConfig:
    """Load configuration and apply command line overrides."""
    config_path = Path(args.config) if args.config else None
    config = load_config(config_path)

    updates = {}
    if args.symbol:
        updates['symbol'] = args.symbol.strip().upper()
    if args.mode:
        updates['mode'] = FeedMode(args.mode)
    if args.log_level:
        updates['logging'] = config.logging.model_copy(update={'level': LogLevel(args.log_level)})

    return config.model_copy(update=updates) if updates else config


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        config = build_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.logging)

    runner = FeedRunner(config)
    runner.setup_signal_handlers()

    try:
        return await runner.run()
    except Exception as e:
        logger.error(f"Error running feed: {e}", exc_info=True)
        return 1
    finally:
        shutdown_logging()


def main_cli() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == '__main__':
    main_cli()
