"""Live price table fed by ticker-update events."""

from __future__ import annotations

import logging
from dataclasses import fields
from typing import Dict, Iterable, Mapping, Optional, Tuple

from portfolio_tracker.market_data.events import EventChannel, ListenerHandle
from portfolio_tracker.market_data.models import Ticker, TickerUpdate, pair_key

logger = logging.getLogger(__name__)

PriceTable = Dict[str, Ticker]

# Fields a partial frame may omit; the previous value is kept in that case.
_MERGEABLE_FIELDS = tuple(
    f.name
    for f in fields(Ticker)
    if f.name not in {"from_symbol", "to_symbol", "price", "timestamp", "derived_fiat_price"}
)


class PriceAggregator:
    """
    Maintains the price table keyed by ``FROM-TO`` pair-keys.

    Tickers quoted in a bridge currency (BTC, ETH) get a ``derived_fiat_price``
    computed from the bridge's own fiat ticker at the time of the update. The
    bridge value is not recomputed later when the bridge ticker moves; the
    next update for the pair picks up the new bridge price.
    """

    def __init__(
        self,
        fiat: str = "USD",
        bridge_currencies: Iterable[str] = ("BTC", "ETH"),
    ):
        self.fiat = fiat.upper()
        self.bridge_currencies: Tuple[str, ...] = tuple(b.upper() for b in bridge_currencies)
        self._table: PriceTable = {}
        self.updates: EventChannel[Ticker] = EventChannel("price:update")

    def attach(self, source: EventChannel[TickerUpdate]) -> ListenerHandle:
        """Subscribe to a ticker-update channel (usually ``streamer.ticker_updates``)."""
        return source.subscribe(self.on_ticker_update)

    def on_ticker_update(self, event: TickerUpdate) -> Ticker:
        key = pair_key(event.from_symbol, event.to_symbol)
        incoming = event.ticker
        ticker = self._table.get(key)

        if ticker is None:
            ticker = incoming
            self._table[key] = ticker
        elif ticker is not incoming:
            ticker.price = incoming.price
            ticker.timestamp = incoming.timestamp
            for name in _MERGEABLE_FIELDS:
                value = getattr(incoming, name)
                if value is not None:
                    setattr(ticker, name, value)

        self._apply_bridge(ticker)
        self.updates.emit(ticker)
        return ticker

    def _apply_bridge(self, ticker: Ticker) -> None:
        if ticker.to_symbol not in self.bridge_currencies:
            return
        bridge = self._table.get(pair_key(ticker.to_symbol, self.fiat))
        if bridge is not None:
            ticker.derived_fiat_price = bridge.price * ticker.price

    def get(self, pair: str) -> Optional[Ticker]:
        return self._table.get(pair)

    @property
    def table(self) -> Mapping[str, Ticker]:
        """Live, read-only view; readers see the latest write per pair."""
        return self._table

    def snapshot(self) -> PriceTable:
        return dict(self._table)

    def load(self, tickers: Mapping[str, Ticker]) -> int:
        """Seed the table (e.g. from the cache) without emitting updates."""
        loaded = 0
        for key, ticker in tickers.items():
            if not (ticker.price and ticker.timestamp):
                logger.debug("Skipping cached ticker %s without price/timestamp", key)
                continue
            self._table[key] = ticker
            loaded += 1
        return loaded

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, pair: object) -> bool:
        return pair in self._table
