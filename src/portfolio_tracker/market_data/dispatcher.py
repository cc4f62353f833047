# src/portfolio_tracker/market_data/dispatcher.py

"""Classification of raw streamer frames into typed events."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from portfolio_tracker.logging_config import TRACE, structured_log_extra
from portfolio_tracker.market_data.exceptions import ProtocolError
from portfolio_tracker.market_data.models import Ticker, TickerUpdate

logger = logging.getLogger(__name__)

TICKER_DISCRIMINATOR = "5"
READY_DISCRIMINATOR = "STREAMERWELCOME"
HEARTBEAT_DISCRIMINATOR = "HEARTBEAT"

SESSION_CONTROL_DISCRIMINATORS = frozenset(
    {
        READY_DISCRIMINATOR,
        "SUBSCRIBECOMPLETE",
        "LOADCOMPLETE",
        "UNSUBSCRIBECOMPLETE",
        "UNSUBSCRIBEALLCOMPLETE",
    }
)

ERROR_DISCRIMINATORS = frozenset(
    {
        "ERROR",
        "INVALID_SUB",
        "INVALID_PARAMETER",
        "INVALID_JSON",
        "UNAUTHORIZED",
        "RATE_LIMIT_OPENING_SOCKETS_TOO_FAST",
        "TOO_MANY_SOCKETS_MAX_1_PER_CLIENT",
        "TOO_MANY_SUBSCRIPTIONS_MAX_300_PER_SOCKET",
    }
)


@dataclass(frozen=True)
class SessionControl:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_ready(self) -> bool:
        return self.kind == READY_DISCRIMINATOR


@dataclass(frozen=True)
class ProviderError:
    kind: str
    message: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class HeartbeatAck:
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)


DispatchResult = Union[SessionControl, TickerUpdate, ProviderError, HeartbeatAck]


def _optional_number(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ProtocolError(f"Field {key} is not numeric: {value!r}", data)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ProtocolError(f"Field {key} is not numeric: {value!r}", data) from None
    if not math.isfinite(number):
        raise ProtocolError(f"Field {key} is not finite: {value!r}", data)
    return number


def parse_ticker(data: Dict[str, Any]) -> Ticker:
    """Normalise a ticker frame into a :class:`Ticker`.

    Missing numeric fields become ``None``; the caller decides whether the
    frame carries enough data to publish.
    """
    price = _optional_number(data, "PRICE")
    timestamp = _optional_number(data, "LASTUPDATE")
    flags = data.get("FLAGS")

    return Ticker(
        from_symbol=str(data.get("FROMSYMBOL", "")),
        to_symbol=str(data.get("TOSYMBOL", "")),
        price=price or 0.0,
        timestamp=int(timestamp or 0),
        volume_24h_from=_optional_number(data, "VOLUME24HOUR"),
        volume_24h_to=_optional_number(data, "VOLUME24HOURTO"),
        top_tier_volume_24h_from=_optional_number(data, "TOPTIERVOLUME24HOUR"),
        top_tier_volume_24h_to=_optional_number(data, "TOPTIERVOLUME24HOURTO"),
        last_market=data.get("LASTMARKET") or data.get("MARKET"),
        flags=flags if isinstance(flags, int) else None,
    )


class MessageDispatcher:
    """
    Parses raw feed frames into typed events.

    :meth:`dispatch` never raises: malformed frames and unknown discriminators
    are logged and dropped so the stream keeps running.
    """

    def __init__(self) -> None:
        self.frames_dispatched = 0
        self.frames_dropped = 0
        self.ticker_updates = 0

    def decode(self, raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolError(f"Frame is not valid UTF-8: {exc}") from exc
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ProtocolError(f"Error parsing JSON data: {exc}", raw) from exc
        if not isinstance(data, dict):
            raise ProtocolError("Frame is not a JSON object", raw)
        return data

    def dispatch(self, raw: Union[str, bytes, Dict[str, Any]]) -> Optional[DispatchResult]:
        self.frames_dispatched += 1
        try:
            result = self._classify(self.decode(raw))
        except ProtocolError as exc:
            reason = exc.reason
        except (ValueError, OverflowError) as exc:
            reason = f"Unusable frame value: {exc}"
        else:
            return result
        self.frames_dropped += 1
        logger.error(
            "Dropping malformed frame: %s",
            reason,
            extra=structured_log_extra(event="protocol_error"),
        )
        return None

    def _classify(self, data: Dict[str, Any]) -> Optional[DispatchResult]:
        discriminator = data.get("MESSAGE") or data.get("TYPE")
        if discriminator is not None:
            discriminator = str(discriminator)

        if discriminator in SESSION_CONTROL_DISCRIMINATORS:
            logger.log(TRACE, "%s", data)
            return SessionControl(kind=discriminator, payload=data)

        if discriminator == TICKER_DISCRIMINATOR:
            return self._handle_ticker(data)

        if discriminator in ERROR_DISCRIMINATORS:
            logger.error(
                "cryptocompare error: %s",
                data,
                extra=structured_log_extra(event="provider_error", kind=discriminator),
            )
            return ProviderError(
                kind=discriminator, message=data.get("INFO") or data.get("MESSAGE"), payload=data
            )

        if discriminator == HEARTBEAT_DISCRIMINATOR:
            return HeartbeatAck(payload=data)

        self.frames_dropped += 1
        logger.warning(
            "UNKNOWN MESSAGE %s",
            data,
            extra=structured_log_extra(event="unknown_message", kind=discriminator),
        )
        return None

    def _handle_ticker(self, data: Dict[str, Any]) -> Optional[TickerUpdate]:
        ticker = parse_ticker(data)
        if not (ticker.price and ticker.timestamp):
            return None
        if not ticker.from_symbol or not ticker.to_symbol:
            raise ProtocolError("Ticker frame without symbol pair", data)

        if logger.isEnabledFor(TRACE):
            try:
                updated_at: object = datetime.fromtimestamp(ticker.timestamp, tz=timezone.utc).isoformat()
            except (OverflowError, OSError, ValueError):
                updated_at = ticker.timestamp
            logger.log(
                TRACE,
                "ticker:update %s: %s %s %s",
                ticker.pair_key,
                ticker.price,
                updated_at,
                ticker.last_market,
            )

        self.ticker_updates += 1
        return TickerUpdate(
            from_symbol=ticker.from_symbol,
            to_symbol=ticker.to_symbol,
            price=ticker.price,
            ticker=ticker,
        )
