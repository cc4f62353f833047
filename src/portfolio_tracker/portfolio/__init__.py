"""Portfolio holdings and their fiat valuation."""

from portfolio_tracker.portfolio.models import CoinValuation, Holding, Portfolio, ValuationResult
from portfolio_tracker.portfolio.valuation import ValuationEngine, round_value, rounding_tier

__all__ = [
    "CoinValuation",
    "Holding",
    "Portfolio",
    "ValuationEngine",
    "ValuationResult",
    "round_value",
    "rounding_tier",
]
