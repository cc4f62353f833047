# src/portfolio_tracker/market_data/exceptions.py

class MarketDataError(Exception):
    """Base exception for the market_data module."""
    pass

class TransportError(MarketDataError):
    """Socket-level failure reported by the websocket library."""
    pass

class ProtocolError(MarketDataError):
    """Raised for frames that cannot be parsed or carry an unknown discriminator."""
    def __init__(self, reason: str, frame=None):
        self.reason = reason
        self.frame = frame
        super().__init__(reason)

class HeartbeatTimeout(MarketDataError):
    """Raised when consecutive heartbeat intervals pass without a single pong."""
    def __init__(self, pings_sent: int, interval: float):
        self.pings_sent = pings_sent
        self.interval = interval
        message = f"Lost {pings_sent} ping replies over {pings_sent * interval:.0f}s."
        super().__init__(message)

class StreamerClosedError(MarketDataError):
    """Raised when a closed streamer is asked to connect again."""
    pass
