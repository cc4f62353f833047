"""
Reconnect delay policy for the streamer.
"""

from __future__ import annotations

import random
from typing import Callable, Optional


class ReconnectBackoff:
    """
    Capped exponential backoff with jitter.

    The first retry waits ``initial_delay``; each following retry multiplies
    the delay by ``factor`` up to ``max_delay``. Jitter varies each delay by up
    to ±25% but never drops below ``initial_delay``.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        factor: float = 2.0,
        max_attempts: Optional[int] = None,
        jitter: bool = True,
        rand: Callable[[], float] = random.random,
    ):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.factor = factor
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._rand = rand
        self.attempts = 0

    def next_delay(self) -> float:
        delay = self.initial_delay
        for _ in range(self.attempts):
            if delay >= self.max_delay:
                break
            delay *= self.factor
        delay = min(delay, self.max_delay)
        self.attempts += 1

        if self.jitter and delay > 0:
            spread = delay * 0.25 * self._rand()
            delay += spread if self._rand() > 0.5 else -spread
            delay = min(max(delay, self.initial_delay), self.max_delay)

        return delay

    def reset(self) -> None:
        self.attempts = 0

    def should_retry(self) -> bool:
        if self.max_attempts is None:
            return True
        return self.attempts < self.max_attempts
