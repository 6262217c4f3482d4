"""Tests for the streaming feed client."""

import asyncio

import pytest

from conftest import TransportFactory, drain, wait_until
from feeds.exceptions import AuthenticationError, ConfigurationError, MaxRetriesExceededError
from feeds.stream_client import (
    EXCLUDED_CONDITIONS,
    ConnectionState,
    ReconnectConfig,
    StreamingFeedClient,
)


def make_client(listener, factory, clock=None, **kwargs):
    return StreamingFeedClient(
        "test-key",
        listeners=[listener],
        transport_factory=factory,
        clock=clock,
        **kwargs
    )


def trade(price, conditions=None, symbol="SPY", t=1_700_000_000_000):
    msg = {"ev": "T", "sym": symbol, "p": price, "s": 100, "t": t, "x": 4}
    if conditions is not None:
        msg["c"] = conditions
    return msg


def minute_bar(start_ms=1_700_000_040_000, close=501.0, symbol="SPY", **overrides):
    msg = {
        "ev": "AM", "sym": symbol, "s": start_ms, "e": start_ms + 60_000,
        "o": 500.0, "h": 502.0, "l": 499.5, "c": close, "v": 12000,
    }
    msg.update(overrides)
    return msg


def zero_delays(client):
    """Record the backoff schedule while reconnecting immediately."""
    delays = []
    backoff = client.reconnect_config.delay_for

    def record(attempt):
        delays.append(backoff(attempt))
        return 0

    client.reconnect_config.delay_for = record
    return delays


@pytest.mark.asyncio
async def test_connect_without_api_key_reports_configuration_error(listener):
    factory = TransportFactory()
    client = StreamingFeedClient("", listeners=[listener], transport_factory=factory)

    await client.connect()

    errors = listener.of("on_error")
    assert len(errors) == 1
    assert isinstance(errors[0][0], ConfigurationError)
    assert factory.calls == 0
    assert client.state == ConnectionState.IDLE


@pytest.mark.asyncio
async def test_connect_sends_auth_and_notifies(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)

    await client.connect()

    assert client.is_connected
    assert factory.last.sent[0] == {"action": "auth", "params": "test-key"}
    assert listener.names() == ["on_connected"]

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_is_ignored_while_connected(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)

    await client.connect()
    await client.connect()

    assert factory.calls == 1
    await client.disconnect()


@pytest.mark.asyncio
async def test_concurrent_connects_open_one_transport(listener):
    gate = asyncio.Event()
    factory = TransportFactory(gate=gate)
    client = make_client(listener, factory)

    first = asyncio.create_task(client.connect())
    second = asyncio.create_task(client.connect())
    await drain()
    assert client.state == ConnectionState.CONNECTING

    gate.set()
    await asyncio.gather(first, second)

    assert factory.calls == 1
    assert client.is_connected
    assert listener.names() == ["on_connected"]
    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_is_ignored_while_reconnect_is_scheduled(listener):
    factory = TransportFactory(failures=1)
    client = make_client(listener, factory, reconnect_config=ReconnectConfig(base_delay=60))

    await client.connect()
    assert client.state == ConnectionState.RECONNECTING

    await client.connect()

    assert factory.calls == 1
    assert client.state == ConnectionState.RECONNECTING
    await client.disconnect()
    assert client.state == ConnectionState.IDLE


@pytest.mark.asyncio
async def test_disconnect_during_open_discards_the_transport(listener):
    gate = asyncio.Event()
    factory = TransportFactory(gate=gate)
    client = make_client(listener, factory)

    stale = asyncio.create_task(client.connect())
    await drain()
    await client.disconnect()
    fresh = asyncio.create_task(client.connect())
    await drain()

    gate.set()
    await asyncio.gather(stale, fresh)

    assert factory.calls == 2
    assert len(factory.open_transports) == 1
    assert client.is_connected
    assert listener.names() == ["on_connected"]

    await client.disconnect()
    assert factory.open_transports == []


@pytest.mark.asyncio
async def test_subscribe_connects_and_replays_after_auth(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)

    await client.subscribe(" spy ")
    assert client.subscriptions == frozenset({"SPY"})
    assert factory.last.sent == [{"action": "auth", "params": "test-key"}]

    factory.last.push([{"ev": "status", "status": "auth_success", "message": "authenticated"}])
    await drain()

    assert factory.last.sent[-1] == {"action": "subscribe", "params": "AM.SPY,A.SPY,T.SPY"}
    await client.disconnect()


@pytest.mark.asyncio
async def test_subscribe_while_connected_sends_immediately(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)
    await client.connect()

    await client.subscribe("QQQ")

    assert factory.last.sent[-1] == {"action": "subscribe", "params": "AM.QQQ,A.QQQ,T.QQQ"}
    await client.disconnect()


@pytest.mark.asyncio
async def test_unsubscribe_removes_symbol(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)
    await client.connect()
    await client.subscribe("SPY")

    await client.unsubscribe("spy")

    assert client.subscriptions == frozenset()
    assert factory.last.sent[-1] == {"action": "unsubscribe", "params": "AM.SPY,A.SPY,T.SPY"}
    await client.disconnect()


@pytest.mark.asyncio
async def test_trades_with_excluded_conditions_are_dropped(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    frames = [trade(500.0 + i, conditions=[code]) for i, code in enumerate(sorted(EXCLUDED_CONDITIONS))]
    factory.last.push(frames)
    factory.last.push([trade(400.0, conditions=[0, 12])])
    await drain()

    assert listener.of("on_trade") == []
    assert client.get_last_price("SPY") is None
    await client.disconnect()


@pytest.mark.asyncio
async def test_regular_trade_is_delivered(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    factory.last.push([trade(501.25, conditions=[0], t=clock.now_ms - 120)])
    await drain()

    [(symbol, price, record)] = listener.of("on_trade")
    assert symbol == "SPY"
    assert price == 501.25
    assert record.size == 100
    assert record.latency_ms == 120
    assert client.latency_ms == 120
    assert client.get_last_price("SPY") == 501.25
    await client.disconnect()


@pytest.mark.asyncio
async def test_unchanged_trade_price_is_deduplicated(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    factory.last.push([trade(500.0), trade(500.0005), trade(500.01), trade(500.01)])
    await drain()

    prices = [args[1] for args in listener.of("on_trade")]
    assert prices == [500.0, 500.01]
    await client.disconnect()


@pytest.mark.asyncio
async def test_invalid_trades_are_ignored(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    factory.last.push([trade(0), trade(-1.0), trade("500"), {"ev": "T", "p": 500.0}])
    await drain()

    assert listener.of("on_trade") == []
    await client.disconnect()


@pytest.mark.asyncio
async def test_aggregates_are_classified_by_interval(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    second = minute_bar(start_ms=1_700_000_041_000, ev="A", close=500.5)
    factory.last.push([minute_bar(), second])
    await drain()

    [(symbol, bar)] = listener.of("on_minute_bar")
    assert symbol == "SPY"
    assert bar.start_time == 1_700_000_040
    assert bar.close == 501.0
    assert bar.volume == 12000

    [(_, second_bar)] = listener.of("on_second_bar")
    assert second_bar.start_time == 1_700_000_041
    assert client.get_last_price("SPY") == 500.5
    await client.disconnect()


@pytest.mark.asyncio
async def test_invalid_bars_are_dropped(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    factory.last.push([
        minute_bar(o=None),
        minute_bar(c="501"),
        minute_bar(s=None),
        minute_bar(h=float("nan")),
    ])
    await drain()

    assert listener.of("on_minute_bar") == []
    await client.disconnect()


@pytest.mark.asyncio
async def test_malformed_frames_do_not_break_the_stream(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.connect()

    factory.last.push("not json")
    factory.last.push({"ev": "T", "sym": "SPY", "p": 500.0})
    factory.last.push([{"ev": "XQ", "sym": "SPY"}, "junk", {"no": "ev"}])
    factory.last.push([minute_bar()])
    await drain()

    assert len(listener.of("on_minute_bar")) == 1
    assert listener.of("on_trade") == []
    assert client.is_connected
    await client.disconnect()


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_delivery(listener, clock):
    class Exploding:
        def on_minute_bar(self, symbol, bar):
            raise RuntimeError("boom")

    factory = TransportFactory()
    client = StreamingFeedClient(
        "test-key", listeners=[Exploding(), listener], transport_factory=factory, clock=clock
    )
    await client.connect()

    factory.last.push([minute_bar()])
    await drain()

    assert len(listener.of("on_minute_bar")) == 1
    await client.disconnect()


def test_backoff_delay_doubles_per_attempt():
    config = ReconnectConfig()

    assert [config.delay_for(n) for n in range(1, 11)] == [
        1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0, 128.0, 256.0, 512.0
    ]


@pytest.mark.asyncio
async def test_dropped_connection_reconnects_and_resubscribes(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)
    delays = zero_delays(client)

    await client.subscribe("SPY")
    first = factory.last
    first.drop()

    await wait_until(lambda: factory.calls == 2 and client.is_connected)
    assert delays == [1.0]
    assert client.reconnect_attempts == 0
    assert listener.names() == ["on_connected", "on_disconnected", "on_connected"]

    factory.last.push([{"ev": "status", "status": "auth_success"}])
    await drain()
    assert factory.last.sent[-1] == {"action": "subscribe", "params": "AM.SPY,A.SPY,T.SPY"}
    await client.disconnect()


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(listener):
    factory = TransportFactory(always_fail=True)
    client = make_client(listener, factory)
    delays = zero_delays(client)

    await client.connect()
    await wait_until(lambda: client.state == ConnectionState.TERMINATED)
    await drain()

    assert factory.calls == 11
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0, 128.0, 256.0, 512.0]
    errors = listener.of("on_error")
    assert len(errors) == 1
    assert isinstance(errors[0][0], MaxRetriesExceededError)
    assert errors[0][0].attempts == 10

    # Only a manual connect() starts over
    factory.always_fail = False
    await client.connect()
    assert client.is_connected
    assert factory.calls == 12
    await client.disconnect()


@pytest.mark.asyncio
async def test_reconnect_recovers_after_transient_failures(listener):
    factory = TransportFactory(failures=3)
    client = make_client(listener, factory)
    delays = zero_delays(client)

    await client.connect()
    await wait_until(lambda: client.is_connected)

    assert factory.calls == 4
    assert delays == [1.0, 2.0, 4.0]
    assert client.reconnect_attempts == 0
    assert client.reconnect_delay == 1.0
    assert listener.of("on_error") == []
    await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_stops_reconnecting(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)
    await client.subscribe("SPY")

    await client.disconnect()
    await drain()

    assert client.state == ConnectionState.IDLE
    assert client.subscriptions == frozenset()
    assert factory.last.closed
    assert factory.calls == 1
    assert listener.of("on_disconnected") == [("Disconnected by client",)]


@pytest.mark.asyncio
async def test_auth_failure_disables_reconnect(listener):
    factory = TransportFactory()
    client = make_client(listener, factory)
    await client.connect()

    factory.last.push([{"ev": "status", "status": "auth_failed", "message": "authentication failed"}])
    await wait_until(lambda: client.state == ConnectionState.IDLE)
    await drain()

    errors = listener.of("on_error")
    assert len(errors) == 1
    assert isinstance(errors[0][0], AuthenticationError)
    assert factory.calls == 1
    assert len(listener.of("on_disconnected")) == 1


@pytest.mark.asyncio
async def test_status_reports_connection_details(listener, clock):
    factory = TransportFactory()
    client = make_client(listener, factory, clock=clock)
    await client.subscribe("SPY")

    status = client.get_status()

    assert status["connected"] is True
    assert status["connecting"] is False
    assert status["state"] == "connected"
    assert status["subscriptions"] == ["SPY"]
    assert status["reconnect_attempts"] == 0
    await client.disconnect()
