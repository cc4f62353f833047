# src/portfolio_tracker/portfolio/exceptions.py


class PortfolioError(Exception):
    """Base exception for portfolio related errors."""

    pass


class PortfolioLoadError(PortfolioError):
    """Raised when a portfolio file cannot be read or parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot load portfolio {path}: {reason}")
        self.path = path
        self.reason = reason


class MissingPriceError(PortfolioError):
    """A holding's coin has no direct fiat ticker and no usable bridge."""

    def __init__(self, coin: str, target_currency: str):
        super().__init__(f"No {target_currency} price available for {coin}")
        self.coin = coin
        self.target_currency = target_currency


class StaleDataError(PortfolioError):
    """A resolved price is older than the configured maximum ticker age."""

    def __init__(self, coin: str, age: float, max_age: float):
        super().__init__(
            f"Price for {coin} is stale: {age:.0f}s old (max {max_age:.0f}s)"
        )
        self.coin = coin
        self.age = age
        self.max_age = max_age
