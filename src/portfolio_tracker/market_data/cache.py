"""Best-effort persistence of the price table between runs."""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from portfolio_tracker.config import get_default_cache_path
from portfolio_tracker.logging_config import structured_log_extra
from portfolio_tracker.market_data.models import Ticker

logger = logging.getLogger(__name__)

_NUMERIC_FIELDS = ("price", "timestamp")
_OPTIONAL_NUMERIC_FIELDS = (
    "volume_24h_from",
    "volume_24h_to",
    "top_tier_volume_24h_from",
    "top_tier_volume_24h_to",
    "derived_fiat_price",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _entry_problem(item: Dict[str, Any]) -> Optional[str]:
    for name in ("from_symbol", "to_symbol"):
        if not isinstance(item.get(name), str):
            return f"{name} is not a string"
    for name in _NUMERIC_FIELDS:
        if not _is_number(item.get(name)):
            return f"{name} is not a number"
    for name in _OPTIONAL_NUMERIC_FIELDS:
        if item.get(name) is not None and not _is_number(item[name]):
            return f"{name} is not a number"
    return None


class PriceTableCache:
    """
    Persists :class:`Ticker` entries to a JSON file.

    Every failure is logged and swallowed: a missing or unreadable cache only
    means the table starts empty.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path).expanduser() if path else get_default_cache_path()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, Ticker]:
        if not self._path.exists():
            return {}

        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "cannot use cache file, skipping: %s (%s)",
                self._path,
                exc,
                extra=structured_log_extra(event="cache_load_failed"),
            )
            return {}

        raw_tickers = data.get("tickers") if isinstance(data, dict) else None
        if not isinstance(raw_tickers, dict):
            return {}

        tickers: Dict[str, Ticker] = {}
        for key, item in raw_tickers.items():
            if not isinstance(item, dict):
                continue
            problem = _entry_problem(item)
            if problem is not None:
                logger.debug("Skipping cached ticker %s: %s", key, problem)
                continue
            try:
                tickers[key] = Ticker.from_dict(item)
            except TypeError as exc:
                logger.debug("Skipping cached ticker %s: %s", key, exc)
        logger.debug("loaded %d tickers from cache %s", len(tickers), self._path)
        return tickers

    def save(self, table: Mapping[str, Ticker]) -> bool:
        payload = {"tickers": {key: ticker.to_dict() for key, ticker in table.items()}}
        tmp_path: Path | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                delete=False,
                dir=self._path.parent,
                prefix=self._path.name,
                suffix=".tmp",
            ) as f:
                tmp_path = Path(f.name)
                json.dump(payload, f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
            return True
        except OSError as exc:
            logger.warning(
                "cannot write cache file %s: %s",
                self._path,
                exc,
                extra=structured_log_extra(event="cache_save_failed"),
            )
            return False
        finally:
            if tmp_path is not None and tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
