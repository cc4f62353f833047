# src/portfolio_tracker/market_data/streamer.py

import asyncio
import functools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Union

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidURI, WebSocketException

from portfolio_tracker.config_models import StreamerConfig
from portfolio_tracker.logging_config import TRACE, structured_log_extra
from portfolio_tracker.market_data.backoff import ReconnectBackoff
from portfolio_tracker.market_data.dispatcher import (
    HeartbeatAck,
    MessageDispatcher,
    SessionControl,
)
from portfolio_tracker.market_data.events import EventChannel
from portfolio_tracker.market_data.exceptions import (
    HeartbeatTimeout,
    StreamerClosedError,
    TransportError,
)
from portfolio_tracker.market_data.models import (
    ConnectionState,
    HeartbeatCounter,
    TickerUpdate,
)
from portfolio_tracker.market_data.scheduler import PeriodicTask
from portfolio_tracker.market_data.subscriptions import (
    SubscriptionRegistry,
    subscribe_command,
    unsubscribe_command,
)

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


def websocket_connector(close_timeout: float = 10.0) -> Connector:
    """
    Returns a connector that opens a websocket with the library keepalive
    disabled; the streamer runs its own ping/pong accounting.
    """

    async def _connect(url: str):
        return await connect(url, ping_interval=None, close_timeout=close_timeout)

    return _connect


class TickerStreamer:
    """
    Keeps a streaming connection to the CryptoCompare websocket API alive,
    replays subscriptions after every reconnect and publishes ticker updates
    on :attr:`ticker_updates`.

    The connection goes Idle -> Connecting -> Open when the provider's welcome
    frame arrives. A heartbeat task pings every ``heartbeat_interval``; after
    ``max_pings_lost`` pings without any pong the socket is closed and a new
    connection is dialled. A socket close also leads to a reconnect, while
    transport errors on send are only logged.
    """

    def __init__(
        self,
        config: StreamerConfig,
        *,
        connector: Optional[Connector] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        registry: Optional[SubscriptionRegistry] = None,
        backoff: Optional[ReconnectBackoff] = None,
    ):
        self._config = config
        self._connector = connector or websocket_connector(config.close_timeout)
        self.dispatcher = dispatcher or MessageDispatcher()
        self.registry = registry or SubscriptionRegistry()
        self._backoff = backoff or ReconnectBackoff(
            initial_delay=config.reconnect_initial_delay,
            max_delay=config.reconnect_max_delay,
            factor=config.reconnect_backoff_factor,
            max_attempts=config.max_reconnect_attempts,
        )

        self.ticker_updates: EventChannel[TickerUpdate] = EventChannel("ticker:update")
        self.state_changes: EventChannel[ConnectionState] = EventChannel("connection:state")

        self.heartbeat = HeartbeatCounter()
        self.reconnect_count = 0
        self.heartbeat_timeouts = 0

        self._state = ConnectionState.IDLE
        self._transport: Optional[Any] = None
        self._generation = 0
        self._opened: Optional[asyncio.Future] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[PeriodicTask] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._closing_task: Optional[asyncio.Task] = None
        self._outbox: Optional[asyncio.Queue] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def subscriptions(self) -> FrozenSet[str]:
        return self.registry.snapshot()

    async def connect(self) -> None:
        """Dials the feed and returns once the provider has opened the session."""
        if self._state is ConnectionState.CLOSED:
            raise StreamerClosedError("Streamer has been disconnected.")
        if self._state is ConnectionState.OPEN:
            return

        loop = asyncio.get_running_loop()
        if self._opened is None or self._opened.done():
            self._opened = loop.create_future()
        opened = self._opened
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = loop.create_task(self._run(), name="ticker-streamer")

        await asyncio.shield(opened)

    async def disconnect(self) -> None:
        """Stops heartbeat and reconnect work, closes the socket. Idempotent."""
        if self._state is ConnectionState.CLOSED:
            return
        self._set_state(ConnectionState.CLOSED)

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()

        transport = self._transport
        if transport is not None:
            await self._close_transport(transport)

        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)

        self._resolve_opened()
        logger.info("disconnect", extra=structured_log_extra(event="streamer_disconnected"))

    def subscribe(self, pairs: Union[str, Iterable[str]]) -> None:
        added = self.registry.subscribe(pairs)
        if added and self._state is ConnectionState.OPEN:
            self._enqueue(subscribe_command(added))
            self.registry.mark_sent()

    def unsubscribe(self, pairs: Union[str, Iterable[str]]) -> None:
        removed = self.registry.unsubscribe(pairs)
        if removed and self._state is ConnectionState.OPEN:
            self._enqueue(unsubscribe_command(removed))

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        """Supervises connect / read / reconnect until the streamer is closed."""
        first_attempt = True
        try:
            while self._state is not ConnectionState.CLOSED:
                self._set_state(ConnectionState.CONNECTING)
                logger.debug("connecting...")
                try:
                    transport = await self._connector(self._config.connection_url)
                except (InvalidURI, ValueError, TypeError) as exc:
                    if first_attempt:
                        logger.error(
                            "Cannot construct websocket transport: %s",
                            exc,
                            extra=structured_log_extra(event="transport_construct_failed"),
                        )
                        self._set_state(ConnectionState.IDLE)
                        self._fail_opened(TransportError(f"Cannot construct transport: {exc}"))
                        return
                    logger.error("WebSocket connect failed: %s", exc)
                except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                    logger.error(
                        "WebSocket connect failed: %s",
                        exc,
                        extra=structured_log_extra(event="transport_error"),
                    )
                else:
                    await self._run_session(transport)

                first_attempt = False
                if self._state is ConnectionState.CLOSED:
                    break

                if not self._backoff.should_retry():
                    logger.error(
                        "Giving up after %d reconnect attempts.",
                        self._backoff.attempts,
                        extra=structured_log_extra(event="reconnect_exhausted"),
                    )
                    self._set_state(ConnectionState.CLOSED)
                    self._fail_opened(TransportError("Reconnect attempts exhausted."))
                    break

                self._set_state(ConnectionState.RECONNECTING)
                self.reconnect_count += 1
                delay = self._backoff.next_delay()
                logger.info(
                    "Reconnecting in %.1fs...",
                    delay,
                    extra=structured_log_extra(event="reconnect_scheduled", delay=delay),
                )
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Streamer supervisor cancelled.")
            raise
        except Exception as exc:
            logger.exception("Streamer supervisor crashed: %s", exc)
            self._fail_opened(TransportError(str(exc)))
            raise
        finally:
            logger.debug("Streamer run loop terminated.")

    async def _run_session(self, transport: Any) -> None:
        self._generation += 1
        self._transport = transport
        self.heartbeat.reset()
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.get_running_loop().create_task(
            self._writer(transport, self._outbox), name="ticker-streamer-writer"
        )
        self._heartbeat_task = PeriodicTask(
            self._config.heartbeat_interval, self._heartbeat_tick, "ticker-streamer-heartbeat"
        ).start()

        try:
            async for raw in transport:
                self._on_frame(raw)
            if self._state is not ConnectionState.CLOSED:
                logger.warning(
                    "WebSocket connection closed.",
                    extra=structured_log_extra(event="transport_closed"),
                )
        except ConnectionClosed as exc:
            if self._state is not ConnectionState.CLOSED:
                logger.warning(
                    "WebSocket connection closed unexpectedly: %s",
                    exc,
                    extra=structured_log_extra(event="transport_closed"),
                )
        finally:
            await self._teardown_session(transport)

    async def _teardown_session(self, transport: Any) -> None:
        if self._heartbeat_task is not None:
            await self._heartbeat_task.stop()
            self._heartbeat_task = None

        if self._writer_task is not None:
            self._writer_task.cancel()
            await asyncio.gather(self._writer_task, return_exceptions=True)
            self._writer_task = None

        if self._closing_task is not None:
            await asyncio.gather(self._closing_task, return_exceptions=True)
            self._closing_task = None

        await self._close_transport(transport)
        self._transport = None
        self._outbox = None

    async def _close_transport(self, transport: Any) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Error while closing websocket: %s", exc)

    def _force_reconnect(self) -> None:
        """Drops the current socket; the supervisor dials a new one."""
        self.heartbeat.reset()
        transport = self._transport
        if transport is None:
            return
        self._closing_task = asyncio.get_running_loop().create_task(
            self._close_transport(transport)
        )

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------
    def _check_heartbeat(self) -> bool:
        """
        Evaluates the heartbeat window once ``max_pings_lost`` pings were sent.
        Returns True when the link was declared dead and a reconnect started.
        """
        counter = self.heartbeat
        if counter.pings_sent < self._config.max_pings_lost:
            return False

        if counter.pongs_received == 0:
            timeout = HeartbeatTimeout(counter.pings_sent, self._config.heartbeat_interval)
            logger.error(
                "Error: %s Reconnecting.",
                timeout,
                extra=structured_log_extra(event="heartbeat_timeout"),
            )
            self.heartbeat_timeouts += 1
            self._force_reconnect()
            return True

        counter.reset()
        return False

    async def _heartbeat_tick(self) -> None:
        if self._check_heartbeat():
            return

        transport = self._transport
        if transport is None:
            return

        try:
            pong_waiter = await transport.ping()
        except Exception as exc:
            logger.error(
                "Error sending ping (%s), reconnecting.",
                exc,
                extra=structured_log_extra(event="heartbeat_ping_failed"),
            )
            self._force_reconnect()
            return

        self.heartbeat.pings_sent += 1
        if isinstance(pong_waiter, asyncio.Future):
            pong_waiter.add_done_callback(functools.partial(self._on_pong, self._generation))

    def _on_pong(self, generation: int, waiter: asyncio.Future) -> None:
        if generation != self._generation or waiter.cancelled() or waiter.exception():
            return
        self._record_pong()

    def _record_pong(self) -> None:
        self.heartbeat.pongs_received += 1
        logger.log(TRACE, "ping reply received")

    # ------------------------------------------------------------------
    # Inbound / outbound frames
    # ------------------------------------------------------------------
    def _on_frame(self, raw: Union[str, bytes]) -> None:
        result = self.dispatcher.dispatch(raw)
        if result is None:
            return
        if isinstance(result, TickerUpdate):
            self.ticker_updates.emit(result)
        elif isinstance(result, SessionControl):
            if result.is_ready:
                self._on_open()
        elif isinstance(result, HeartbeatAck):
            self._record_pong()

    def _on_open(self) -> None:
        if self._state is not ConnectionState.CONNECTING:
            return

        self._backoff.reset()
        self.heartbeat.reset()
        self._set_state(ConnectionState.OPEN)
        logger.info(
            "connection established",
            extra=structured_log_extra(event="streamer_open", reconnects=self.reconnect_count),
        )

        active = self.registry.snapshot()
        if active:
            logger.log(TRACE, "subscribing to previous subs: %s", sorted(active))
            self._enqueue(subscribe_command(active))
        self.registry.mark_sent()
        self._resolve_opened()

    def _enqueue(self, command: Dict[str, Any]) -> None:
        if self._outbox is None:
            return
        self._outbox.put_nowait(json.dumps(command))

    async def _writer(self, transport: Any, outbox: asyncio.Queue) -> None:
        while True:
            message = await outbox.get()
            try:
                await transport.send(message)
            except ConnectionClosed as exc:
                logger.warning("Dropping command on closed connection: %s", exc)
                return
            except Exception as exc:
                error = TransportError(str(exc))
                logger.error(
                    "error: %s",
                    error,
                    extra=structured_log_extra(event="transport_error"),
                )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.debug("Streamer state %s -> %s", previous.value, state.value)
        self.state_changes.emit(state)

    def _resolve_opened(self) -> None:
        if self._opened is not None and not self._opened.done():
            self._opened.set_result(None)

    def _fail_opened(self, exc: BaseException) -> None:
        if self._opened is not None and not self._opened.done():
            self._opened.set_exception(exc)
