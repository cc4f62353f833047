"""Long-running orchestrator for the portfolio tracker."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Callable, List, Optional, Sequence

from portfolio_tracker import APP_VERSION
from portfolio_tracker.config_models import TrackerConfig
from portfolio_tracker.logging_config import get_log_environment, structured_log_extra
from portfolio_tracker.market_data.aggregator import PriceAggregator
from portfolio_tracker.market_data.cache import PriceTableCache
from portfolio_tracker.market_data.scheduler import Scheduler
from portfolio_tracker.market_data.streamer import TickerStreamer
from portfolio_tracker.portfolio.loader import (
    holdings_from_data,
    load_portfolio,
    reload_portfolios,
    ticker_subscriptions,
)
from portfolio_tracker.portfolio.models import Portfolio
from portfolio_tracker.portfolio.valuation import ValuationEngine
from portfolio_tracker.reporting import write_reports

logger = logging.getLogger(__name__)


class PortfolioTracker:
    """
    Wires the streamer, price table, valuation engine and report writers.

    Portfolios are re-read every ``portfolio_reload_interval`` seconds (and on
    SIGHUP), stats are written every ``stats_save_interval`` seconds and the
    price table is persisted every ``cache_save_interval`` seconds.
    """

    def __init__(
        self,
        config: TrackerConfig,
        portfolios: Sequence[Portfolio],
        *,
        streamer: Optional[TickerStreamer] = None,
        aggregator: Optional[PriceAggregator] = None,
        engine: Optional[ValuationEngine] = None,
        cache: Optional[PriceTableCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.portfolios: List[Portfolio] = list(portfolios)
        self.streamer = streamer or TickerStreamer(config.streamer)
        self.aggregator = aggregator or PriceAggregator(
            fiat=config.valuation.target_currency,
            bridge_currencies=config.valuation.bridge_currencies,
        )
        self.engine = engine or ValuationEngine(config.valuation, clock=clock)
        if cache is None and config.cache_enabled:
            cache = PriceTableCache(config.cache_path)
        self.cache = cache
        self.scheduler = Scheduler()
        self._clock = clock
        self._stop = asyncio.Event()
        self._shutdown_done = False
        self._feed_handle = None

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------
    def current_subscriptions(self) -> List[str]:
        return ticker_subscriptions(
            self.portfolios,
            self.config.coin_mappings,
            fiat=self.config.valuation.target_currency,
            bridges=self.config.valuation.bridge_currencies,
        )

    def sync_subscriptions(self) -> None:
        """Subscribe to pairs new portfolio coins need and drop unused ones."""
        wanted = set(self.current_subscriptions())
        active = set(self.streamer.subscriptions)
        if active - wanted:
            self.streamer.unsubscribe(sorted(active - wanted))
        if wanted - active:
            self.streamer.subscribe(sorted(wanted - active))

    def reload(self) -> None:
        logger.info("(re)loading portfolios", extra=structured_log_extra(event="portfolio_reload"))
        reload_portfolios(self.portfolios, clock=self._clock)
        self.sync_subscriptions()

    def save_stats(self) -> None:
        table = self.aggregator.table
        valuation = self.config.valuation
        for portfolio in self.portfolios:
            result = self.engine.compute_valuation(
                holdings_from_data(portfolio.data),
                table,
                target_currency=valuation.target_currency,
                max_ticker_age=valuation.max_ticker_age,
            )
            write_reports(portfolio, result, table, self.config.report, valuation.max_ticker_age)

    def save_cache(self) -> None:
        if self.cache is not None:
            self.cache.save(self.aggregator.table)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Load state and schedule periodic work. Does not wait for the feed."""
        for portfolio in self.portfolios:
            load_portfolio(portfolio, clock=self._clock)

        if self.cache is not None:
            loaded = self.aggregator.load(self.cache.load())
            logger.debug("Seeded price table with %d cached tickers", loaded)

        self._feed_handle = self.aggregator.attach(self.streamer.ticker_updates)
        self.streamer.subscribe(self.current_subscriptions())

        scheduler_config = self.config.scheduler
        self.scheduler.every(scheduler_config.portfolio_reload_interval, self.reload, "portfolio-reload")
        self.scheduler.every(scheduler_config.stats_save_interval, self.save_stats, "stats-save")
        if self.cache is not None:
            self.scheduler.every(scheduler_config.cache_save_interval, self.save_cache, "cache-save")

    def request_stop(self, signal_number: Optional[int] = None) -> None:
        if not self._stop.is_set():
            logger.info(
                "Exit cleanup...",
                extra=structured_log_extra(event="shutdown_requested", signal_number=signal_number),
            )
        self._stop.set()

    async def shutdown(self, reason: str = "exit") -> None:
        """Stop the feed and scheduled work, then persist the price table once."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stop.set()

        try:
            await self.streamer.disconnect()
        except Exception as exc:
            logger.error("Error while disconnecting: %s", exc)
        await self.scheduler.shutdown()
        if self._feed_handle is not None:
            self._feed_handle.cancel()
        self.save_cache()

        logger.info("Shutdown complete", extra=structured_log_extra(event="shutdown_complete", reason=reason))

    def install_signal_handlers(self) -> None:  # pragma: no cover - signal driven
        loop = asyncio.get_running_loop()
        handlers = [(signal.SIGINT, lambda: self.request_stop(signal.SIGINT)),
                    (signal.SIGTERM, lambda: self.request_stop(signal.SIGTERM))]
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is not None:
            handlers.append((sighup, self.reload))
        for signum, handler in handlers:
            try:
                loop.add_signal_handler(signum, handler)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unsupported for %s", signum)

    async def run(self, install_signals: bool = True) -> int:
        """Run until a stop is requested. Returns the process exit code."""
        await self.start()
        if install_signals:
            self.install_signal_handlers()

        logger.info(
            "Starting portfolio tracker",
            extra=structured_log_extra(
                event="startup",
                env=get_log_environment(),
                app_version=APP_VERSION,
                portfolios=[p.key for p in self.portfolios],
                subscriptions=sorted(self.streamer.subscriptions),
            ),
        )

        exit_code = 0
        connect_task = asyncio.ensure_future(self.streamer.connect())
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait({connect_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if connect_task in done and connect_task.exception() is not None:
                logger.error("Cannot connect to the price feed: %s", connect_task.exception())
                exit_code = 1
            else:
                await self._stop.wait()
        finally:
            stop_task.cancel()
            await self.shutdown(reason="signal" if exit_code == 0 else "error")
            if not connect_task.done():
                await asyncio.gather(connect_task, return_exceptions=True)
        return exit_code


async def run(config: TrackerConfig, portfolios: Sequence[Portfolio]) -> int:
    tracker = PortfolioTracker(config, portfolios)
    return await tracker.run()
