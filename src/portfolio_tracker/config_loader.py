from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import appdirs  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]

from portfolio_tracker.config_models import (
    SAVE_FORMATS,
    ReportConfig,
    SchedulerConfig,
    StreamerConfig,
    TrackerConfig,
    ValuationConfig,
)

APP_NAME = "portfolio_tracker"
API_KEY_ENV_VAR = "CRYPTOCOMPARE_API_KEY"
API_KEY_FILE_PROPERTY = "cryptocompare"

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the tracker cannot be configured; fatal before connecting."""

    pass


def get_config_dir() -> Path:
    """Returns the OS-specific configuration directory using appdirs."""
    return Path(appdirs.user_config_dir(APP_NAME))


def get_cache_dir() -> Path:
    """Returns the OS-specific cache directory used for the price-table cache."""
    return Path(appdirs.user_cache_dir(APP_NAME))


def get_default_cache_path() -> Path:
    return get_cache_dir() / "state.json"


def resolve_api_key(
    api_key_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> str:
    """
    Loads the CryptoCompare API key from a JSON file (``cryptocompare``
    property) or, failing that, from the ``CRYPTOCOMPARE_API_KEY`` variable.
    """
    environ = os.environ if environ is None else environ

    if api_key_path is not None:
        path = Path(api_key_path).expanduser()
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except OSError as exc:
            raise ConfigurationError(f"Cannot read API key file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"API key file {path} is not valid JSON: {exc}") from exc

        api_key = data.get(API_KEY_FILE_PROPERTY) if isinstance(data, dict) else None
        if not isinstance(api_key, str) or not api_key:
            raise ConfigurationError(
                f"API key file {path} has no '{API_KEY_FILE_PROPERTY}' property"
            )
        return api_key

    api_key = environ.get(API_KEY_ENV_VAR)
    if api_key:
        return api_key

    raise ConfigurationError(
        "API key is required: provide -k/--api-key argument or "
        f"{API_KEY_ENV_VAR} environment variable"
    )


def _deep_merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    config_path: Optional[Path] = None,
    *,
    api_key: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> TrackerConfig:
    """
    Loads the tracker configuration from YAML, applies overrides and returns a
    single immutable :class:`TrackerConfig`.

    Invalid values are logged and replaced by defaults. A missing API key is
    the only fatal condition and raises :class:`ConfigurationError`.
    """
    explicit_path = config_path is not None
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"
    config_path = Path(config_path).expanduser()

    raw_config: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    elif explicit_path:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    else:
        logger.debug(
            "Configuration file not found; using defaults",
            extra={"event": "config_missing_file", "config_path": str(config_path)},
        )

    if not isinstance(raw_config, dict):
        logger.warning(
            "Configuration file is not a mapping; falling back to defaults",
            extra={"event": "config_invalid_format", "config_path": str(config_path)},
        )
        raw_config = {}

    if overrides:
        raw_config = _deep_merge_dicts(raw_config, overrides)

    def _section(name: str) -> Dict[str, Any]:
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            logger.warning(
                "%s config is not a mapping; using defaults",
                name,
                extra={"event": f"config_invalid_{name}", "config_path": str(config_path)},
            )
            return {}
        return data

    def _positive_number(data: Dict[str, Any], key: str, default: float) -> float:
        value = data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            logger.warning(
                "%s is invalid; using default %s",
                key,
                default,
                extra={"event": f"config_invalid_{key}", "config_path": str(config_path)},
            )
            return default
        return float(value)

    def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
        value = data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            logger.warning(
                "%s is invalid; using default %s",
                key,
                default,
                extra={"event": f"config_invalid_{key}", "config_path": str(config_path)},
            )
            return default
        return value

    streamer_data = _section("streamer")
    valuation_data = _section("valuation")
    report_data = _section("report")
    scheduler_data = _section("scheduler")

    resolved_key = api_key or streamer_data.get("api_key")
    if not isinstance(resolved_key, str) or not resolved_key:
        raise ConfigurationError("API key is required before connecting to the feed")

    default_streamer = StreamerConfig(api_key=resolved_key)
    max_attempts = streamer_data.get("max_reconnect_attempts")
    if max_attempts is not None and (
        isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1
    ):
        logger.warning(
            "max_reconnect_attempts is invalid; retrying forever",
            extra={"event": "config_invalid_max_reconnect_attempts", "config_path": str(config_path)},
        )
        max_attempts = None

    url = streamer_data.get("url", default_streamer.url)
    if not isinstance(url, str) or not url.startswith(("ws://", "wss://")):
        logger.warning(
            "Streamer url '%s' is not a websocket url; using default",
            url,
            extra={"event": "config_invalid_url", "config_path": str(config_path)},
        )
        url = default_streamer.url

    streamer_config = StreamerConfig(
        api_key=resolved_key,
        url=url,
        heartbeat_interval=_positive_number(
            streamer_data, "heartbeat_interval", default_streamer.heartbeat_interval
        ),
        max_pings_lost=_positive_int(
            streamer_data, "max_pings_lost", default_streamer.max_pings_lost
        ),
        reconnect_initial_delay=_positive_number(
            streamer_data, "reconnect_initial_delay", default_streamer.reconnect_initial_delay
        ),
        reconnect_max_delay=_positive_number(
            streamer_data, "reconnect_max_delay", default_streamer.reconnect_max_delay
        ),
        reconnect_backoff_factor=_positive_number(
            streamer_data, "reconnect_backoff_factor", default_streamer.reconnect_backoff_factor
        ),
        max_reconnect_attempts=max_attempts,
        close_timeout=_positive_number(
            streamer_data, "close_timeout", default_streamer.close_timeout
        ),
    )

    default_valuation = ValuationConfig()
    target_currency = valuation_data.get("target_currency", default_valuation.target_currency)
    if not isinstance(target_currency, str) or not target_currency:
        logger.warning(
            "target_currency is invalid; using default",
            extra={"event": "config_invalid_target_currency", "config_path": str(config_path)},
        )
        target_currency = default_valuation.target_currency

    bridges = valuation_data.get("bridge_currencies", list(default_valuation.bridge_currencies))
    if not isinstance(bridges, list) or not all(isinstance(b, str) for b in bridges):
        logger.warning(
            "bridge_currencies should be a list of symbols; using default",
            extra={"event": "config_invalid_bridge_currencies", "config_path": str(config_path)},
        )
        bridges = list(default_valuation.bridge_currencies)

    valuation_config = ValuationConfig(
        target_currency=target_currency.upper(),
        max_ticker_age=_positive_number(
            valuation_data, "max_ticker_age", default_valuation.max_ticker_age
        ),
        bridge_currencies=tuple(b.upper() for b in bridges),
    )

    default_report = ReportConfig()
    raw_formats = report_data.get("save_formats", sorted(default_report.save_formats))
    if isinstance(raw_formats, str):
        raw_formats = [raw_formats]
    if not isinstance(raw_formats, (list, tuple, set, frozenset)):
        logger.warning(
            "save_formats should be a list; using default",
            extra={"event": "config_invalid_save_formats", "config_path": str(config_path)},
        )
        raw_formats = sorted(default_report.save_formats)

    save_formats = set()
    for fmt in raw_formats:
        if fmt not in SAVE_FORMATS:
            logger.warning(
                "Unknown save format %s; skipping",
                fmt,
                extra={"event": "config_unknown_save_format", "config_path": str(config_path)},
            )
            continue
        save_formats.add(fmt)

    ticker_format = report_data.get("ticker_format", default_report.ticker_format)
    if not isinstance(ticker_format, str):
        ticker_format = default_report.ticker_format

    outdated_symbol = report_data.get("outdated_symbol", default_report.outdated_symbol)
    if not isinstance(outdated_symbol, str):
        outdated_symbol = default_report.outdated_symbol

    report_config = ReportConfig(
        save_formats=frozenset(save_formats),
        ticker_format=ticker_format,
        outdated_symbol=outdated_symbol,
    )

    default_scheduler = SchedulerConfig()
    scheduler_config = SchedulerConfig(
        portfolio_reload_interval=_positive_number(
            scheduler_data,
            "portfolio_reload_interval",
            default_scheduler.portfolio_reload_interval,
        ),
        stats_save_interval=_positive_number(
            scheduler_data, "stats_save_interval", default_scheduler.stats_save_interval
        ),
        cache_save_interval=_positive_number(
            scheduler_data, "cache_save_interval", default_scheduler.cache_save_interval
        ),
    )

    coin_mappings = _parse_coin_mappings(raw_config.get("coin_mappings"), config_path)

    cache_data = _section("cache")
    cache_path = cache_data.get("path")
    if cache_path is not None and not isinstance(cache_path, str):
        cache_path = None

    return TrackerConfig(
        streamer=streamer_config,
        valuation=valuation_config,
        report=report_config,
        scheduler=scheduler_config,
        coin_mappings=coin_mappings,
        cache_path=cache_path,
        cache_enabled=bool(cache_data.get("enabled", True)),
    )


def _parse_coin_mappings(raw: Any, config_path: Path) -> Dict[str, Tuple[str, ...]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        logger.warning(
            "coin_mappings should be a mapping; defaulting to empty",
            extra={"event": "config_invalid_coin_mappings", "config_path": str(config_path)},
        )
        return {}

    mappings: Dict[str, Tuple[str, ...]] = {}
    for coin, entry in raw.items():
        # Accept both {"ADA": ["USD"]} and the original {"ADA": {"to": ["USD"]}}.
        quotes = entry.get("to") if isinstance(entry, dict) else entry
        if isinstance(quotes, str):
            quotes = [quotes]
        if not isinstance(quotes, list) or not all(isinstance(q, str) for q in quotes):
            logger.warning(
                "coin_mappings entry for %s is invalid; skipping",
                coin,
                extra={"event": "config_invalid_coin_mapping_entry", "config_path": str(config_path)},
            )
            continue
        mappings[str(coin).upper()] = tuple(q.upper() for q in quotes)
    return mappings
