"""Live CryptoCompare price tracking and valuation for crypto portfolios."""

from importlib import metadata

try:
    APP_VERSION: str = metadata.version("portfolio-tracker")
except metadata.PackageNotFoundError:
    # Running from a source checkout without installed metadata.
    APP_VERSION = "0.0.0-dev"

__version__ = APP_VERSION

__all__ = ["APP_VERSION", "__version__"]
