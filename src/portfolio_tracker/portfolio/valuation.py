# src/portfolio_tracker/portfolio/valuation.py

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional

from portfolio_tracker.config_models import ValuationConfig
from portfolio_tracker.logging_config import structured_log_extra
from portfolio_tracker.market_data.models import Ticker, pair_key
from portfolio_tracker.portfolio.exceptions import MissingPriceError, StaleDataError
from portfolio_tracker.portfolio.models import CoinValuation, Holding, ValuationResult

logger = logging.getLogger(__name__)

INTEGER_TIER = "integer"
CENTS_TIER = "cents"
MILLI_TIER = "milli"

_TIER_DIGITS = {INTEGER_TIER: 0, CENTS_TIER: 2, MILLI_TIER: 3}


def rounding_tier(value: float) -> str:
    """Presentation rounding tier for a fiat amount."""
    if value > 100:
        return INTEGER_TIER
    if value > 1:
        return CENTS_TIER
    return MILLI_TIER


def round_value(value: float) -> float:
    """Round to the tier's precision, with halves going up (``100.5`` -> ``101``)."""
    scale = 10 ** _TIER_DIGITS[rounding_tier(value)]
    return math.floor(value * scale + 0.5) / scale


class ResolvedPrice(NamedTuple):
    price: float
    source_pair: str
    timestamp: Optional[float]


class ValuationEngine:
    """
    Converts holdings into a fiat valuation using a price table.

    A coin is priced from its direct ``COIN-<fiat>`` ticker when present,
    otherwise from a ``COIN-<bridge>`` ticker carrying a derived fiat price
    (bridges are tried in configured order). Coins with neither are reported
    in ``missing_coins`` and contribute nothing to the total. The engine only
    reads the table.
    """

    def __init__(self, config: Optional[ValuationConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or ValuationConfig()
        self._clock = clock

    def compute_valuation(
        self,
        holdings: Iterable[Holding],
        price_table: Mapping[str, Ticker],
        target_currency: Optional[str] = None,
        max_ticker_age: Optional[float] = None,
    ) -> ValuationResult:
        fiat = (target_currency or self.config.target_currency).upper()
        max_age = self.config.max_ticker_age if max_ticker_age is None else max_ticker_age
        now = self._clock()

        per_coin: Dict[str, CoinValuation] = {}
        missing: List[str] = []

        for holding in holdings:
            coin = holding.coin.upper()
            if not holding.quantity and coin != "BTC":
                continue

            resolved = self._resolve_price(coin, fiat, price_table)
            if resolved is None:
                missing.append(coin)
                continue

            outdated = False
            if resolved.timestamp is not None:
                age = now - resolved.timestamp
                outdated = age > max_age
                if outdated:
                    logger.debug(
                        "%s",
                        StaleDataError(coin, age, max_age),
                        extra=structured_log_extra(event="stale_price", pair=resolved.source_pair),
                    )

            value = holding.quantity * resolved.price
            per_coin[coin] = CoinValuation(
                coin=coin,
                quantity=holding.quantity,
                fiat_price=resolved.price,
                fiat_value=value,
                source_pair=resolved.source_pair,
                outdated=outdated,
                rounding_tier=rounding_tier(value),
            )

        missing_coins = frozenset(missing)
        if missing_coins:
            logger.warning(
                "Missing coins: %s",
                ", ".join(sorted(missing_coins)),
                extra=structured_log_extra(event="missing_coins", coins=sorted(missing_coins)),
            )
            for coin in sorted(missing_coins):
                logger.debug("%s", MissingPriceError(coin, fiat))

        return ValuationResult(
            per_coin=per_coin,
            total_fiat_value=sum(c.fiat_value for c in per_coin.values()),
            missing_coins=missing_coins,
            target_currency=fiat,
            timestamp=now,
        )

    def _resolve_price(
        self, coin: str, fiat: str, price_table: Mapping[str, Ticker]
    ) -> Optional[ResolvedPrice]:
        if coin == fiat:
            return ResolvedPrice(1.0, pair_key(coin, fiat), None)

        direct = price_table.get(pair_key(coin, fiat))
        if direct is not None and direct.price:
            return ResolvedPrice(direct.price, direct.pair_key, direct.timestamp)

        for bridge in self.config.bridge_currencies:
            ticker = price_table.get(pair_key(coin, bridge))
            if ticker is not None and ticker.derived_fiat_price:
                return ResolvedPrice(ticker.derived_fiat_price, ticker.pair_key, ticker.timestamp)
        return None
