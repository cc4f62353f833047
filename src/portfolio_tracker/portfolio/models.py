# src/portfolio_tracker/portfolio/models.py

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


@dataclass(frozen=True)
class Holding:
    coin: str
    quantity: float


@dataclass(frozen=True)
class CoinValuation:
    coin: str
    quantity: float
    fiat_price: float
    fiat_value: float
    source_pair: str
    outdated: bool = False
    rounding_tier: str = "integer"


@dataclass(frozen=True)
class ValuationResult:
    per_coin: Mapping[str, CoinValuation]
    total_fiat_value: float
    missing_coins: FrozenSet[str]
    target_currency: str = "USD"
    timestamp: float = 0.0

    def ordered(self) -> List[CoinValuation]:
        """Coins by descending fiat value, ties broken by symbol."""
        return sorted(self.per_coin.values(), key=lambda c: (-c.fiat_value, c.coin))

    @property
    def outdated_coins(self) -> FrozenSet[str]:
        return frozenset(c.coin for c in self.per_coin.values() if c.outdated)


@dataclass
class Portfolio:
    key: str
    source_path: Path
    stats_dir: Path
    data: Dict[str, Any] = field(default_factory=dict)
    loaded_at: Optional[float] = None

    @property
    def tickers_path(self) -> Path:
        return self.stats_dir / f"{self.key}.tickers.txt"

    @property
    def summary_path(self) -> Path:
        return self.stats_dir / f"{self.key}.summary.txt"

    @property
    def total_path(self) -> Path:
        return self.stats_dir / f"{self.key}.balance.txt"

    @property
    def all_stats_path(self) -> Path:
        return self.stats_dir / f"{self.key}.stats.json"
