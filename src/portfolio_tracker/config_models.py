from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

SAVE_FORMATS: Tuple[str, ...] = ("statsjson", "balancetxt", "tickerstxt", "summarytxt")


@dataclass(frozen=True)
class StreamerConfig:
    api_key: str
    url: str = "wss://streamer.cryptocompare.com/v2"
    heartbeat_interval: float = 30.0
    max_pings_lost: int = 3
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_backoff_factor: float = 2.0
    max_reconnect_attempts: Optional[int] = None
    close_timeout: float = 10.0

    def __repr__(self) -> str:
        # The API key never goes into logs.
        return (
            "StreamerConfig("
            f"url={self.url!r}, "
            f"heartbeat_interval={self.heartbeat_interval!r}, "
            f"max_pings_lost={self.max_pings_lost!r})"
        )

    @property
    def connection_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}api_key={self.api_key}"


@dataclass(frozen=True)
class ValuationConfig:
    target_currency: str = "USD"
    max_ticker_age: float = 3600.0
    bridge_currencies: Tuple[str, ...] = ("BTC", "ETH")


@dataclass(frozen=True)
class ReportConfig:
    save_formats: FrozenSet[str] = frozenset({"statsjson"})
    ticker_format: str = "{from}{to}{price}{outdated}"
    outdated_symbol: str = "!"


@dataclass(frozen=True)
class SchedulerConfig:
    portfolio_reload_interval: float = 600.0
    stats_save_interval: float = 1.0
    cache_save_interval: float = 60.0


@dataclass(frozen=True)
class TrackerConfig:
    streamer: StreamerConfig
    valuation: ValuationConfig = field(default_factory=ValuationConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    # coin -> quote symbols to subscribe; coins not listed stream against BTC
    coin_mappings: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    cache_path: Optional[str] = None
    cache_enabled: bool = True
