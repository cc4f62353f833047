"""Shared fixtures: an in-memory websocket transport and streamer helpers."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, List

import pytest

from portfolio_tracker.config_models import StreamerConfig
from portfolio_tracker.market_data.backoff import ReconnectBackoff

WELCOME_FRAME = {"TYPE": "20", "MESSAGE": "STREAMERWELCOME", "SERVER_UPTIME_SECONDS": 1}

_CLOSED = object()


class FakeTransport:
    """Stands in for a websockets client connection."""

    def __init__(self, auto_pong: bool = True) -> None:
        self.auto_pong = auto_pong
        self.fail_send = False
        self.sent: List[dict] = []
        self.pings = 0
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    def feed(self, frame: Any) -> None:
        self._frames.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._frames.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def send(self, message: str) -> None:
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(json.loads(message))

    async def ping(self) -> asyncio.Future:
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(0.001)
        return waiter

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._frames.put_nowait(_CLOSED)


class FakeConnector:
    """Hands out a fresh :class:`FakeTransport` per dial."""

    def __init__(self, *, welcome: bool = True, auto_pong: bool = True) -> None:
        self.welcome = welcome
        self.auto_pong = auto_pong
        self.urls: List[str] = []
        self.transports: List[FakeTransport] = []

    async def __call__(self, url: str) -> FakeTransport:
        self.urls.append(url)
        transport = FakeTransport(auto_pong=self.auto_pong)
        if self.welcome:
            transport.feed(WELCOME_FRAME)
        self.transports.append(transport)
        return transport


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def streamer_config() -> StreamerConfig:
    return StreamerConfig(
        api_key="test-key",
        url="wss://example.invalid/v2",
        heartbeat_interval=0.01,
        max_pings_lost=3,
        reconnect_initial_delay=0.001,
        reconnect_max_delay=0.01,
    )


@pytest.fixture
def fast_backoff() -> ReconnectBackoff:
    return ReconnectBackoff(initial_delay=0.001, max_delay=0.01, jitter=False)
