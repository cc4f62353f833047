# tests/test_main_loop.py

import asyncio
import json

import pytest

from conftest import FakeConnector, wait_for
from portfolio_tracker.config_models import ReportConfig, SchedulerConfig, TrackerConfig
from portfolio_tracker.main import PortfolioTracker
from portfolio_tracker.market_data.cache import PriceTableCache
from portfolio_tracker.market_data.models import ConnectionState, Ticker
from portfolio_tracker.market_data.streamer import TickerStreamer
from portfolio_tracker.portfolio.loader import build_portfolios


@pytest.fixture
def portfolio_file(tmp_path):
    path = tmp_path / "main.json"
    path.write_text(
        json.dumps(
            {
                "BTC": {"wallets": [{"total": 0.5}]},
                "XMR": {"wallets": [{"total": 10}, {"total": 2}]},
            }
        )
    )
    return path


@pytest.fixture
def tracker_config(streamer_config):
    return TrackerConfig(
        streamer=streamer_config,
        report=ReportConfig(save_formats=frozenset({"statsjson", "balancetxt"})),
        scheduler=SchedulerConfig(
            portfolio_reload_interval=60, stats_save_interval=0.01, cache_save_interval=60
        ),
        cache_enabled=False,
    )


def _tracker(config, portfolio_file, backoff, connector=None, cache=None):
    connector = connector or FakeConnector()
    out_dir = portfolio_file.parent / "stats"
    out_dir.mkdir(exist_ok=True)
    portfolios = build_portfolios([portfolio_file], [out_dir])
    streamer = TickerStreamer(config.streamer, connector=connector, backoff=backoff)
    return PortfolioTracker(config, portfolios, streamer=streamer, cache=cache), connector


def _ticker_frame(from_symbol, to_symbol, price):
    return {
        "TYPE": "5",
        "FROMSYMBOL": from_symbol,
        "TOSYMBOL": to_symbol,
        "PRICE": price,
        "LASTUPDATE": 1_700_000_000,
    }


def test_streamed_prices_end_up_in_stats_files(tracker_config, portfolio_file, fast_backoff):
    async def scenario():
        tracker, connector = _tracker(tracker_config, portfolio_file, fast_backoff)
        task = asyncio.ensure_future(tracker.run(install_signals=False))
        await wait_for(lambda: tracker.streamer.state is ConnectionState.OPEN)

        transport = connector.transports[0]
        await wait_for(lambda: transport.sent)
        assert transport.sent[0] == {
            "action": "SubAdd",
            "subs": ["5~CCCAGG~BTC~USD", "5~CCCAGG~ETH~USD", "5~CCCAGG~XMR~BTC"],
        }

        transport.feed(_ticker_frame("BTC", "USD", 50000))
        transport.feed(_ticker_frame("XMR", "BTC", 0.002))
        balance_path = tracker.portfolios[0].total_path
        await wait_for(lambda: balance_path.exists() and balance_path.read_text() == "26200")

        tracker.request_stop()
        return await asyncio.wait_for(task, timeout=2), tracker

    exit_code, tracker = asyncio.run(scenario())

    assert exit_code == 0
    assert tracker.streamer.state is ConnectionState.CLOSED
    stats = json.loads(tracker.portfolios[0].all_stats_path.read_text(encoding="utf-8"))
    assert stats["balance"] == pytest.approx(26200)
    assert [row["coin"] for row in stats["summary"]] == ["BTC", "XMR"]


def test_reload_syncs_subscriptions_with_portfolio(tracker_config, portfolio_file, fast_backoff):
    async def scenario():
        tracker, _ = _tracker(tracker_config, portfolio_file, fast_backoff)
        await tracker.start()
        assert "XMR-BTC" in tracker.streamer.subscriptions

        portfolio_file.write_text(json.dumps({"BTC": {"wallets": []}, "ADA": {"wallets": []}}))
        tracker.reload()

        subscriptions = tracker.streamer.subscriptions
        await tracker.shutdown()
        return subscriptions

    subscriptions = asyncio.run(scenario())
    assert subscriptions == frozenset({"ADA-BTC", "BTC-USD", "ETH-USD"})


def test_broken_reload_keeps_previous_portfolio(tracker_config, portfolio_file, fast_backoff):
    async def scenario():
        tracker, _ = _tracker(tracker_config, portfolio_file, fast_backoff)
        await tracker.start()
        before = dict(tracker.portfolios[0].data)

        portfolio_file.write_text("{")
        tracker.reload()

        after = tracker.portfolios[0].data
        await tracker.shutdown()
        return before, after

    before, after = asyncio.run(scenario())
    assert after == before


def test_cache_seeds_table_and_is_saved_on_shutdown(tracker_config, portfolio_file, fast_backoff, tmp_path):
    cache = PriceTableCache(tmp_path / "cache" / "state.json")
    cache.save({"BTC-USD": Ticker("BTC", "USD", 42000.0, 1_700_000_000)})

    async def scenario():
        tracker, _ = _tracker(tracker_config, portfolio_file, fast_backoff, cache=cache)
        await tracker.start()
        seeded = tracker.aggregator.get("BTC-USD").price
        await tracker.shutdown()
        await tracker.shutdown()
        return seeded

    assert asyncio.run(scenario()) == 42000.0
    assert set(cache.load()) == {"BTC-USD"}


def test_connect_failure_returns_error_code(tracker_config, portfolio_file, fast_backoff):
    async def bad_connector(url):
        raise ValueError("unsupported scheme")

    async def scenario():
        tracker, _ = _tracker(tracker_config, portfolio_file, fast_backoff, connector=bad_connector)
        return await tracker.run(install_signals=False)

    assert asyncio.run(scenario()) == 1
