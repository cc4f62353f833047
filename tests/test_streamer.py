# tests/test_streamer.py

import asyncio
import dataclasses

import pytest

from conftest import FakeConnector, FakeTransport, WELCOME_FRAME, wait_for
from portfolio_tracker.market_data.backoff import ReconnectBackoff
from portfolio_tracker.market_data.exceptions import StreamerClosedError, TransportError
from portfolio_tracker.market_data.models import ConnectionState, TickerUpdate
from portfolio_tracker.market_data.streamer import TickerStreamer


def _build(config, backoff, **connector_kwargs):
    connector = FakeConnector(**connector_kwargs)
    streamer = TickerStreamer(config, connector=connector, backoff=backoff)
    return streamer, connector


def test_connect_opens_on_welcome_and_passes_api_key(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        states = []
        streamer.state_changes.subscribe(states.append)

        await asyncio.wait_for(streamer.connect(), timeout=2)

        assert streamer.state is ConnectionState.OPEN
        assert connector.urls == ["wss://example.invalid/v2?api_key=test-key"]
        assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN]
        await streamer.disconnect()

    asyncio.run(scenario())


def test_subscribe_while_open_sends_only_new_pairs(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        await streamer.connect()
        transport = connector.transports[0]

        streamer.subscribe(["btc-usd", "ETH-USD"])
        streamer.subscribe("BTC-USD")
        await wait_for(lambda: len(transport.sent) == 1)
        await asyncio.sleep(0.01)

        assert transport.sent == [
            {"action": "SubAdd", "subs": ["5~CCCAGG~BTC~USD", "5~CCCAGG~ETH~USD"]}
        ]

        streamer.unsubscribe("ETH-USD")
        await wait_for(lambda: len(transport.sent) == 2)
        assert transport.sent[1] == {"action": "SubRemove", "subs": ["5~CCCAGG~ETH~USD"]}
        assert streamer.subscriptions == frozenset({"BTC-USD"})
        await streamer.disconnect()

    asyncio.run(scenario())


def test_subscriptions_made_before_connect_are_sent_on_open(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        streamer.subscribe(["XMR-BTC", "BTC-USD"])
        assert streamer.registry.pending() == frozenset({"XMR-BTC", "BTC-USD"})

        await streamer.connect()
        transport = connector.transports[0]
        await wait_for(lambda: transport.sent)

        assert transport.sent[0] == {
            "action": "SubAdd",
            "subs": ["5~CCCAGG~BTC~USD", "5~CCCAGG~XMR~BTC"],
        }
        assert streamer.registry.pending() == frozenset()
        await streamer.disconnect()

    asyncio.run(scenario())


def test_socket_close_reconnects_and_replays_active_set(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        await streamer.connect()
        streamer.subscribe(["BTC-USD", "ETH-USD", "ADA-BTC"])
        streamer.unsubscribe("ADA-BTC")
        before = streamer.subscriptions

        await connector.transports[0].close()
        await wait_for(
            lambda: len(connector.transports) == 2 and streamer.state is ConnectionState.OPEN
        )
        replay = connector.transports[1]
        await wait_for(lambda: replay.sent)

        assert streamer.reconnect_count == 1
        assert streamer.subscriptions == before
        assert replay.sent[0] == {
            "action": "SubAdd",
            "subs": ["5~CCCAGG~BTC~USD", "5~CCCAGG~ETH~USD"],
        }
        await streamer.disconnect()

    asyncio.run(scenario())


def test_connect_during_reconnect_waits_for_open(streamer_config):
    async def scenario():
        slow_backoff = ReconnectBackoff(initial_delay=0.05, max_delay=0.05, jitter=False)
        streamer, connector = _build(streamer_config, slow_backoff)
        await streamer.connect()

        await connector.transports[0].close()
        await wait_for(lambda: streamer.state is not ConnectionState.OPEN)
        await asyncio.wait_for(streamer.connect(), timeout=2)

        assert streamer.state is ConnectionState.OPEN
        assert len(connector.transports) == 2
        await streamer.disconnect()

    asyncio.run(scenario())


def test_missing_pongs_force_reconnect(streamer_config, fast_backoff, caplog):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff, auto_pong=False)
        await streamer.connect()
        first = connector.transports[0]

        await wait_for(lambda: streamer.heartbeat_timeouts >= 1 and len(connector.transports) >= 2)

        assert first.closed is True
        assert first.pings >= streamer_config.max_pings_lost
        await streamer.disconnect()

    caplog.set_level("ERROR")
    asyncio.run(scenario())
    assert "Lost 3 ping replies" in caplog.text


def test_answered_pings_keep_connection(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        await streamer.connect()

        await wait_for(lambda: connector.transports[0].pings >= 8)

        assert streamer.heartbeat_timeouts == 0
        assert len(connector.transports) == 1
        assert streamer.state is ConnectionState.OPEN
        await streamer.disconnect()

    asyncio.run(scenario())


def test_provider_heartbeat_frame_counts_as_pong(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff, auto_pong=False)
        await streamer.connect()
        connector.transports[0].feed({"TYPE": "999", "MESSAGE": "HEARTBEAT"})
        await wait_for(lambda: streamer.heartbeat.pongs_received >= 1)
        await streamer.disconnect()

    asyncio.run(scenario())


def test_ping_failure_triggers_reconnect(streamer_config, fast_backoff):
    class BrokenPingTransport(FakeTransport):
        async def ping(self):
            raise ConnectionResetError("reset by peer")

    class BrokenPingConnector(FakeConnector):
        async def __call__(self, url):
            transport = BrokenPingTransport()
            transport.feed(WELCOME_FRAME)
            self.transports.append(transport)
            return transport

    async def scenario():
        connector = BrokenPingConnector()
        streamer = TickerStreamer(streamer_config, connector=connector, backoff=fast_backoff)
        await streamer.connect()
        await wait_for(lambda: len(connector.transports) >= 2)
        assert connector.transports[0].closed is True
        await streamer.disconnect()

    asyncio.run(scenario())


def test_send_failure_is_logged_without_reconnect(streamer_config, fast_backoff, caplog):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        await streamer.connect()
        transport = connector.transports[0]
        transport.fail_send = True

        streamer.subscribe("BTC-USD")
        await asyncio.sleep(0.05)

        assert streamer.state is ConnectionState.OPEN
        assert streamer.reconnect_count == 0
        assert len(connector.transports) == 1
        await streamer.disconnect()

    caplog.set_level("ERROR")
    asyncio.run(scenario())
    assert "broken pipe" in caplog.text


def test_ticker_frames_are_published(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        received = []
        streamer.ticker_updates.subscribe(received.append)
        await streamer.connect()

        connector.transports[0].feed(
            {"TYPE": "5", "FROMSYMBOL": "BTC", "TOSYMBOL": "USD", "PRICE": 50000, "LASTUPDATE": 1700000000}
        )
        connector.transports[0].feed("not json at all")
        await wait_for(lambda: received)
        await asyncio.sleep(0.01)

        assert len(received) == 1
        assert isinstance(received[0], TickerUpdate)
        assert received[0].pair_key == "BTC-USD"
        assert streamer.state is ConnectionState.OPEN
        await streamer.disconnect()

    asyncio.run(scenario())


def test_disconnect_is_idempotent_and_final(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        await streamer.connect()

        await streamer.disconnect()
        await streamer.disconnect()

        assert streamer.state is ConnectionState.CLOSED
        assert connector.transports[0].closed is True
        with pytest.raises(StreamerClosedError):
            await streamer.connect()

    asyncio.run(scenario())


def test_disconnect_releases_pending_connect(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff, welcome=False)
        pending = asyncio.ensure_future(streamer.connect())
        await wait_for(lambda: connector.transports)

        await streamer.disconnect()
        await asyncio.wait_for(pending, timeout=1)

        assert pending.exception() is None
        assert streamer.state is ConnectionState.CLOSED

    asyncio.run(scenario())


def test_unusable_url_fails_connect(streamer_config, fast_backoff):
    async def bad_connector(url):
        raise ValueError(f"{url} isn't a valid URI")

    async def scenario():
        streamer = TickerStreamer(streamer_config, connector=bad_connector, backoff=fast_backoff)
        with pytest.raises(TransportError):
            await streamer.connect()
        assert streamer.state is ConnectionState.IDLE

    asyncio.run(scenario())


def test_network_errors_are_retried(streamer_config, fast_backoff):
    attempts = []

    async def scenario():
        good = FakeConnector()

        async def flaky(url):
            attempts.append(url)
            if len(attempts) < 3:
                raise ConnectionRefusedError("refused")
            return await good(url)

        streamer = TickerStreamer(streamer_config, connector=flaky, backoff=fast_backoff)
        await asyncio.wait_for(streamer.connect(), timeout=2)
        assert streamer.state is ConnectionState.OPEN
        assert streamer.reconnect_count == 2
        await streamer.disconnect()

    asyncio.run(scenario())
    assert len(attempts) == 3


def test_non_finite_ticker_frame_does_not_stop_the_stream(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(streamer_config, fast_backoff)
        received = []
        streamer.ticker_updates.subscribe(received.append)
        await streamer.connect()
        transport = connector.transports[0]

        transport.feed(
            '{"TYPE": "5", "FROMSYMBOL": "BTC", "TOSYMBOL": "USD", "PRICE": 50000, "LASTUPDATE": Infinity}'
        )
        transport.feed(
            {"TYPE": "5", "FROMSYMBOL": "ETH", "TOSYMBOL": "USD", "PRICE": 3000, "LASTUPDATE": 1700000000}
        )
        await wait_for(lambda: received)

        assert [update.pair_key for update in received] == ["ETH-USD"]
        assert streamer.dispatcher.frames_dropped == 1
        assert streamer.state is ConnectionState.OPEN
        assert len(connector.transports) == 1
        await streamer.disconnect()

    asyncio.run(scenario())


def _quiet_heartbeat(config):
    return dataclasses.replace(config, heartbeat_interval=60.0)


def test_three_unanswered_pings_reconnect_once_and_reset_counters(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(_quiet_heartbeat(streamer_config), fast_backoff)
        await streamer.connect()
        streamer.heartbeat.pings_sent = 3
        streamer.heartbeat.pongs_received = 0

        assert streamer._check_heartbeat() is True
        assert (streamer.heartbeat.pings_sent, streamer.heartbeat.pongs_received) == (0, 0)

        await wait_for(
            lambda: len(connector.transports) == 2 and streamer.state is ConnectionState.OPEN
        )
        await asyncio.sleep(0.02)

        assert streamer.heartbeat_timeouts == 1
        assert streamer.reconnect_count == 1
        assert len(connector.transports) == 2
        assert connector.transports[0].closed is True
        assert (streamer.heartbeat.pings_sent, streamer.heartbeat.pongs_received) == (0, 0)
        await streamer.disconnect()

    asyncio.run(scenario())


def test_answered_ping_in_window_resets_counters_without_reconnect(streamer_config, fast_backoff):
    async def scenario():
        streamer, connector = _build(_quiet_heartbeat(streamer_config), fast_backoff)
        await streamer.connect()
        streamer.heartbeat.pings_sent = 3
        streamer.heartbeat.pongs_received = 1

        assert streamer._check_heartbeat() is False
        await asyncio.sleep(0.02)

        assert (streamer.heartbeat.pings_sent, streamer.heartbeat.pongs_received) == (0, 0)
        assert streamer.heartbeat_timeouts == 0
        assert streamer.reconnect_count == 0
        assert len(connector.transports) == 1
        assert streamer.state is ConnectionState.OPEN
        await streamer.disconnect()

    asyncio.run(scenario())
