# src/portfolio_tracker/reporting.py

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from portfolio_tracker.config_models import ReportConfig
from portfolio_tracker.logging_config import structured_log_extra
from portfolio_tracker.market_data.models import Ticker
from portfolio_tracker.portfolio.models import Portfolio, ValuationResult
from portfolio_tracker.portfolio.valuation import round_value

logger = logging.getLogger(__name__)

FIAT_SYMBOL = "$"
MICRO_BTC_SYMBOL = "µBTC"

_FIELD_PATTERN = re.compile(r"\{(from|to|price|outdated)\}")

SUMMARY_COLUMNS = ("coin", "coin_balance", "currency", "price", "balance")
_RIGHT_ALIGNED = {"price", "balance"}


def format_number(value: float) -> str:
    """Render a rounded amount without a trailing ``.0`` for whole numbers."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_ticker(
    ticker: Ticker,
    now: float,
    use_fiat_bridge: bool = False,
    template: str = "{from}{to}{price}{outdated}",
    max_ticker_age: float = 3600.0,
    outdated_symbol: str = "!",
    fiat: str = "USD",
) -> str:
    """
    Fill ``template`` for a single ticker.

    Fiat-quoted tickers show ``$``. With ``use_fiat_bridge`` the bridged
    fiat price is shown instead of the native quote. BTC quotes are shown in
    µBTC. Unknown placeholders are left untouched.
    """
    price = ticker.price
    to_symbol = ticker.to_symbol
    if to_symbol == fiat:
        to_symbol = FIAT_SYMBOL
    elif use_fiat_bridge:
        to_symbol = FIAT_SYMBOL
        price = ticker.derived_fiat_price or 0.0
    elif to_symbol == "BTC":
        to_symbol = MICRO_BTC_SYMBOL
        price = ticker.price * 1e6

    values = {
        "from": ticker.from_symbol,
        "to": to_symbol,
        "price": format_number(round_value(price)),
        "outdated": outdated_symbol if (now - ticker.timestamp) > max_ticker_age else "",
    }
    return _FIELD_PATTERN.sub(lambda match: values[match.group(1)], template)


def ticker_lines(
    tickers: Mapping[str, Ticker],
    now: float,
    report: ReportConfig,
    max_ticker_age: float,
    fiat: str = "USD",
) -> List[str]:
    options = dict(
        template=report.ticker_format,
        max_ticker_age=max_ticker_age,
        outdated_symbol=report.outdated_symbol,
        fiat=fiat,
    )
    lines: List[str] = []
    for key in sorted(tickers):
        ticker = tickers[key]
        lines.append(format_ticker(ticker, now, False, **options))
        if ticker.derived_fiat_price:
            lines.append(format_ticker(ticker, now, True, **options))
    return lines


def summary_rows(result: ValuationResult) -> List[Dict[str, Any]]:
    return [
        {
            "coin": coin.coin,
            "coin_balance": round_value(coin.quantity),
            "currency": result.target_currency,
            "price": round_value(coin.fiat_price),
            "balance": round_value(coin.fiat_value),
        }
        for coin in result.ordered()
    ]


def render_summary(rows: Sequence[Mapping[str, Any]], columns: Sequence[str] = SUMMARY_COLUMNS) -> str:
    """Aligned text table with upper-case headings and right-aligned amounts."""

    def cell(value: Any) -> str:
        return format_number(value) if isinstance(value, (int, float)) else str(value)

    table = [[column.upper() for column in columns]]
    table.extend([cell(row.get(column, "")) for column in columns] for row in rows)
    widths = [max(len(line[i]) for line in table) for i in range(len(columns))]

    lines = []
    for line in table:
        cells = [
            value.rjust(width) if column in _RIGHT_ALIGNED else value.ljust(width)
            for column, value, width in zip(columns, line, widths)
        ]
        lines.append(" ".join(cells).rstrip())
    return "\n".join(lines)


def atomic_write_text(path: Path, text: str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=path.parent,
            prefix=path.name,
            suffix=".tmp",
        ) as f:
            tmp_path = Path(f.name)
            f.write(text)
        os.replace(tmp_path, path)
    finally:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def build_reports(
    portfolio: Portfolio,
    result: ValuationResult,
    tickers: Mapping[str, Ticker],
    report: ReportConfig,
    max_ticker_age: float,
) -> Dict[Path, str]:
    """Render every enabled save format into ``{path: contents}``."""
    lines = ticker_lines(
        tickers, result.timestamp, report, max_ticker_age, fiat=result.target_currency
    )
    rows = summary_rows(result)
    outputs: Dict[Path, str] = {}

    if "balancetxt" in report.save_formats:
        outputs[portfolio.total_path] = format_number(round_value(result.total_fiat_value))
    if "tickerstxt" in report.save_formats:
        outputs[portfolio.tickers_path] = "\n".join(lines)
    if "summarytxt" in report.save_formats:
        outputs[portfolio.summary_path] = render_summary(rows)
    if "statsjson" in report.save_formats:
        outputs[portfolio.all_stats_path] = json.dumps(
            {
                "currency": result.target_currency,
                "balance": result.total_fiat_value,
                "tickers": lines,
                "summary": rows,
            },
            indent=4,
            ensure_ascii=False,
        )
    return outputs


def write_reports(
    portfolio: Portfolio,
    result: ValuationResult,
    tickers: Mapping[str, Ticker],
    report: ReportConfig,
    max_ticker_age: float,
) -> List[Path]:
    """
    Write the enabled report files for one portfolio.

    A file that cannot be written is logged and skipped; the remaining files
    are still attempted. Returns the paths written.
    """
    written: List[Path] = []
    for path, text in build_reports(portfolio, result, tickers, report, max_ticker_age).items():
        try:
            atomic_write_text(path, text)
        except OSError as exc:
            logger.error(
                "Failed to write %s: %s",
                path,
                exc,
                extra=structured_log_extra(event="report_write_failed", portfolio=portfolio.key),
            )
            continue
        written.append(path)
    return written

