# src/portfolio_tracker/portfolio/loader.py

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from portfolio_tracker.logging_config import structured_log_extra
from portfolio_tracker.market_data.models import pair_key
from portfolio_tracker.portfolio.exceptions import PortfolioLoadError
from portfolio_tracker.portfolio.models import Holding, Portfolio

logger = logging.getLogger(__name__)


def portfolio_key(path: Path) -> str:
    """``/data/main.json`` -> ``main``."""
    return Path(path).stem


def read_portfolio_file(path: Path) -> Dict[str, Any]:
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except OSError as exc:
        raise PortfolioLoadError(str(path), str(exc)) from exc
    except json.JSONDecodeError as exc:
        raise PortfolioLoadError(str(path), f"invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise PortfolioLoadError(str(path), "top level must be an object of coins")
    return data


def holdings_from_data(data: Mapping[str, Any]) -> List[Holding]:
    """
    Sum wallet totals per coin.

    Entries that are not objects, wallets that are not lists and falsy or
    non-numeric totals are ignored.
    """
    holdings: List[Holding] = []
    for coin, entry in data.items():
        wallets = entry.get("wallets") if isinstance(entry, dict) else None
        total = 0.0
        if isinstance(wallets, list):
            for wallet in wallets:
                value = wallet.get("total") if isinstance(wallet, dict) else None
                if not value:
                    continue
                try:
                    total += float(value)
                except (TypeError, ValueError):
                    logger.warning(
                        "Ignoring non-numeric wallet total %r for %s", value, coin,
                        extra=structured_log_extra(event="portfolio_invalid_total"),
                    )
        holdings.append(Holding(coin=str(coin).upper(), quantity=total))
    return holdings


def build_portfolios(
    portfolio_paths: Sequence[Path], destinations: Sequence[Path]
) -> List[Portfolio]:
    """
    Pair each portfolio file with an output directory.

    When fewer destinations than portfolios are given, the last destination
    is reused for the remaining files.
    """
    if not destinations:
        raise ValueError("at least one destination directory is required")

    portfolios: List[Portfolio] = []
    destination = Path(destinations[0])
    for index, source in enumerate(portfolio_paths):
        if index < len(destinations):
            destination = Path(destinations[index])
        source = Path(source)
        portfolios.append(
            Portfolio(key=portfolio_key(source), source_path=source, stats_dir=destination)
        )
    return portfolios


def load_portfolio(portfolio: Portfolio, clock=time.time) -> Portfolio:
    portfolio.data = read_portfolio_file(portfolio.source_path)
    portfolio.loaded_at = clock()
    logger.info(
        "Loaded portfolio %s (%d coins)",
        portfolio.key,
        len(portfolio.data),
        extra=structured_log_extra(event="portfolio_loaded", portfolio=portfolio.key),
    )
    return portfolio


def reload_portfolios(portfolios: Iterable[Portfolio], clock=time.time) -> int:
    """
    Re-read every portfolio file. A failing file keeps its previous data.

    Returns the number of portfolios reloaded successfully.
    """
    reloaded = 0
    for portfolio in portfolios:
        try:
            load_portfolio(portfolio, clock=clock)
        except PortfolioLoadError as exc:
            logger.error(
                "%s; keeping previous data",
                exc,
                extra=structured_log_extra(event="portfolio_reload_failed", portfolio=portfolio.key),
            )
            continue
        reloaded += 1
    return reloaded


def ticker_subscriptions(
    portfolios: Iterable[Portfolio],
    coin_mappings: Optional[Mapping[str, Tuple[str, ...]]] = None,
    fiat: str = "USD",
    bridges: Iterable[str] = ("BTC", "ETH"),
) -> List[str]:
    """
    Pairs to stream for the given portfolios.

    A coin listed in ``coin_mappings`` subscribes to each configured quote;
    any other coin is quoted in BTC. ``<bridge>-<fiat>`` is always included
    so bridged prices can be converted.
    """
    mappings = coin_mappings or {}
    fiat = fiat.upper()
    pairs: Set[str] = {pair_key(bridge.upper(), fiat) for bridge in bridges}

    for portfolio in portfolios:
        for coin in portfolio.data:
            coin = str(coin).upper()
            if coin == fiat:
                continue
            quotes = mappings.get(coin) or ("BTC",)
            for quote in quotes:
                if quote.upper() != coin:
                    pairs.add(pair_key(coin, quote.upper()))
    return sorted(pairs)
