"""Tests for the command-line feed host."""

import asyncio

import pytest

from config import FeedConfig, FeedMode, LogLevel
from conftest import ScriptedBarSource, make_bar
from feeds.candle_poller import CandlePoller, PollerConfig
from feeds.runner import FeedRunner, LoggingListener, build_config, parse_arguments
from utils import LogCategory


@pytest.fixture(autouse=True)
def no_env(monkeypatch, tmp_path):
    for name in ["POLYGON_API_KEY", "FEED_SYMBOL", "FEED_MODE", "FEED_LOG_LEVEL", "FEED_POLL_INTERVAL"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_command_line_overrides_config():
    args = parse_arguments(["--symbol", "qqq", "--mode", "poll", "--log-level", "DEBUG"])

    config = build_config(args)

    assert config.symbol == "QQQ"
    assert config.mode == FeedMode.POLL
    assert config.logging.level == LogLevel.DEBUG


def test_defaults_without_arguments():
    config = build_config(parse_arguments([]))

    assert config.symbol == "SPY"
    assert config.mode == FeedMode.STREAM


def test_stream_client_is_built_from_settings():
    config = FeedConfig(stream={"api_key": "k", "max_reconnect_attempts": 3, "base_reconnect_delay": 0.5})

    client = FeedRunner(config).build_stream_client()

    assert client.api_key == "k"
    assert client.reconnect_config.max_retries == 3
    assert client.reconnect_config.delay_for(2) == 1.0


def test_logging_listener_counts_events():
    listener = LoggingListener(LogCategory.POLLER)

    listener.on_minute_bar("SPY", make_bar(1_700_000_000))
    listener.on_initial_load([])
    listener.on_error(RuntimeError("boom"))

    assert listener.bars_received == 1


@pytest.mark.asyncio
async def test_poll_mode_runs_until_shutdown(monkeypatch):
    config = FeedConfig(mode="poll", symbol="SPY")
    runner = FeedRunner(config)
    source = ScriptedBarSource(history=[make_bar(1_700_000_000)])
    poller = CandlePoller(source, config=PollerConfig(poll_interval=3600))
    monkeypatch.setattr(runner, "build_poller", lambda: poller)

    task = asyncio.create_task(runner.run())
    await asyncio.sleep(0.01)
    assert poller.is_running

    runner.request_shutdown()
    assert await asyncio.wait_for(task, timeout=1.0) == 0
    assert not poller.is_running


@pytest.mark.asyncio
async def test_poll_mode_fails_when_history_is_unavailable(monkeypatch):
    runner = FeedRunner(FeedConfig(mode="poll"))
    poller = CandlePoller(ScriptedBarSource(history=[]), config=PollerConfig(poll_interval=3600))
    monkeypatch.setattr(runner, "build_poller", lambda: poller)

    assert await runner.run() == 1


@pytest.mark.asyncio
async def test_runner_builds_delta_engine_from_settings(caplog):
    config = FeedConfig(delta={"window_seconds": 10, "default_delta": 0.6}, logging={"level": "DEBUG"})
    runner = FeedRunner(config)

    assert runner.delta_engine.window_ms == 10_000
    assert runner.delta_engine.get_delta() == 0.6
    assert runner.delta_engine.debug_mode

    with caplog.at_level("INFO", logger="feeds.runner"):
        await runner.stop()

    [status] = [r for r in caplog.records if hasattr(r, "signal_data")]
    assert status.signal_data["delta"] == 0.6
    assert status.category == "SIGNALS"
