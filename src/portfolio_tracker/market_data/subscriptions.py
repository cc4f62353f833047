from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List, Set, Union

from portfolio_tracker.logging_config import TRACE

logger = logging.getLogger(__name__)

AGGREGATE_INDEX_TYPE = "5"
AGGREGATE_EXCHANGE = "CCCAGG"
TOKEN_DELIMITER = "~"

PairArg = Union[str, Iterable[str]]


def normalize_pair(pair: str) -> str:
    """Upper-case a ``FROM-TO`` pair-key, rejecting keys without a separator."""
    if not isinstance(pair, str) or "-" not in pair.strip("-"):
        raise ValueError(f"Invalid pair-key {pair!r}; expected 'FROM-TO'")
    return pair.strip().upper()


def _as_pairs(pairs: PairArg) -> List[str]:
    if isinstance(pairs, str):
        pairs = [pairs]
    return [normalize_pair(p) for p in pairs]


def encode_token(pair: str) -> str:
    """Encode a pair-key as an aggregate-feed channel token (``5~CCCAGG~FROM~TO``)."""
    return TOKEN_DELIMITER.join(
        [AGGREGATE_INDEX_TYPE, AGGREGATE_EXCHANGE, normalize_pair(pair).replace("-", TOKEN_DELIMITER, 1)]
    )


def subscribe_command(pairs: Iterable[str]) -> Dict[str, object]:
    return {"action": "SubAdd", "subs": sorted(encode_token(p) for p in pairs)}


def unsubscribe_command(pairs: Iterable[str]) -> Dict[str, object]:
    return {"action": "SubRemove", "subs": sorted(encode_token(p) for p in pairs)}


class SubscriptionRegistry:
    """
    Tracks the pair-keys the caller wants streamed.

    The active set survives reconnects and is replayed verbatim on every new
    session. The pending set holds additions not yet sent to the provider.
    """

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._pending: Set[str] = set()

    def subscribe(self, pairs: PairArg) -> List[str]:
        """Add pairs to the active set; returns those that were not active yet."""
        added = []
        for pair in _as_pairs(pairs):
            if pair not in self._active:
                self._active.add(pair)
                self._pending.add(pair)
                added.append(pair)
        if added:
            logger.log(TRACE, "subscribing to %s", added)
        return added

    def unsubscribe(self, pairs: PairArg) -> List[str]:
        """Remove pairs from the active set; returns those that were active."""
        removed = []
        for pair in _as_pairs(pairs):
            if pair in self._active:
                self._active.discard(pair)
                self._pending.discard(pair)
                removed.append(pair)
        if removed:
            logger.log(TRACE, "unsubscribing from %s", removed)
        return removed

    def snapshot(self) -> FrozenSet[str]:
        return frozenset(self._active)

    def pending(self) -> FrozenSet[str]:
        return frozenset(self._pending)

    def mark_sent(self) -> None:
        self._pending.clear()

    def __contains__(self, pair: object) -> bool:
        return isinstance(pair, str) and pair.upper() in self._active

    def __len__(self) -> int:
        return len(self._active)
