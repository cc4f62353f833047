"""Command line interface for the portfolio tracker."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from portfolio_tracker import APP_VERSION
from portfolio_tracker.config import (
    API_KEY_ENV_VAR,
    SAVE_FORMATS,
    ConfigurationError,
    TrackerConfig,
    load_config,
    resolve_api_key,
)
from portfolio_tracker.logging_config import configure_logging, level_for_verbosity
from portfolio_tracker.main import PortfolioTracker
from portfolio_tracker.portfolio.exceptions import PortfolioLoadError
from portfolio_tracker.portfolio.loader import build_portfolios
from portfolio_tracker.portfolio.models import Portfolio

logger = logging.getLogger(__name__)

DEFAULT_SAVE_FORMAT = "statsjson"
DEFAULT_TICKER_FORMAT = "{from}{to}{price}{outdated}"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portfolio-tracker",
        description="Track crypto portfolios with live CryptoCompare prices.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "-k",
        "--api-key",
        help=(
            "Path to a JSON file containing the CryptoCompare API key in a "
            '"cryptocompare" property. Alternatively supply the API key directly '
            f"in a {API_KEY_ENV_VAR} environment variable."
        ),
    )
    parser.add_argument(
        "-p",
        "--portfolio",
        action="append",
        required=True,
        help=(
            "Path to a JSON file containing the portfolio to track. Can be "
            "specified multiple times for multiple portfolios."
        ),
    )
    parser.add_argument(
        "-d",
        "--destination",
        action="append",
        required=True,
        help=(
            "Path to the destination directory where portfolio stats will be "
            "saved. Can be specified multiple times for multiple portfolios."
        ),
    )
    parser.add_argument(
        "--save",
        action="append",
        choices=SAVE_FORMATS,
        help=(
            "Which stats files should be saved. Can be specified multiple times "
            f"(default: {DEFAULT_SAVE_FORMAT})."
        ),
    )
    parser.add_argument(
        "--ticker-format",
        help=(
            "Format used for ticker output. Available fields: {from}, {to}, "
            f"{{price}}, {{outdated}} (default: {DEFAULT_TICKER_FORMAT})."
        ),
    )
    parser.add_argument("-c", "--config", help="Path to a YAML configuration file.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Print errors only.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print more info.")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines.")
    return parser


def _validate_paths(portfolios: Sequence[Portfolio]) -> Optional[str]:
    for portfolio in portfolios:
        if not portfolio.source_path.exists():
            return f"Error: given portfolio file does not exist: {portfolio.source_path}"
        if not portfolio.stats_dir.is_dir():
            return f"Error: given stats directory does not exist: {portfolio.stats_dir}"
    return None


def _build_config(args: argparse.Namespace) -> TrackerConfig:
    api_key = resolve_api_key(Path(args.api_key) if args.api_key else None)

    report_overrides = {}
    if args.save:
        report_overrides["save_formats"] = sorted(set(args.save))
    if args.ticker_format is not None:
        report_overrides["ticker_format"] = args.ticker_format

    overrides = {"report": report_overrides} if report_overrides else None
    config_path = Path(args.config) if args.config else None
    return load_config(config_path, api_key=api_key, overrides=overrides)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``portfolio-tracker`` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(
        level=level_for_verbosity(quiet=args.quiet, verbose=args.verbose),
        json_output=args.json_logs,
    )

    try:
        config = _build_config(args)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    portfolios = build_portfolios(
        [Path(p).expanduser() for p in args.portfolio],
        [Path(d).expanduser() for d in args.destination],
    )
    error = _validate_paths(portfolios)
    if error:
        print(error, file=sys.stderr)
        return 1

    tracker = PortfolioTracker(config, portfolios)
    try:
        return asyncio.run(tracker.run())
    except PortfolioLoadError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - interactive
        return 0


def main_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    main_entry()
