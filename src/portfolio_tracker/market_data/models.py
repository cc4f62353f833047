from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional


def pair_key(from_symbol: str, to_symbol: str) -> str:
    return f"{from_symbol}-{to_symbol}"


@dataclass
class Ticker:
    from_symbol: str
    to_symbol: str
    price: float
    timestamp: int
    volume_24h_from: Optional[float] = None
    volume_24h_to: Optional[float] = None
    top_tier_volume_24h_from: Optional[float] = None
    top_tier_volume_24h_to: Optional[float] = None
    last_market: Optional[str] = None
    flags: Optional[int] = None
    derived_fiat_price: Optional[float] = None

    @property
    def pair_key(self) -> str:
        return pair_key(self.from_symbol, self.to_symbol)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ticker":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class TickerUpdate:
    from_symbol: str
    to_symbol: str
    price: float
    ticker: Ticker

    @property
    def pair_key(self) -> str:
        return pair_key(self.from_symbol, self.to_symbol)


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class HeartbeatCounter:
    pings_sent: int = 0
    pongs_received: int = 0

    def reset(self) -> None:
        self.pings_sent = 0
        self.pongs_received = 0
