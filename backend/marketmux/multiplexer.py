"""Public entry point: one upstream connection shared by many subscribers."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .cache import SnapshotCache
from .config import MultiplexerSettings
from .dispatcher import Dispatcher
from .errors import ExhaustedReconnectError, MalformedMessageError
from .interface import Transport
from .models import (
    ConnectionState,
    MultiplexerStats,
    NormalizedRecord,
    RecordCallback,
    StreamKey,
    StreamKind,
    SubscriptionHandle,
    build_stream_keys,
)
from .normalizer import normalize
from .registry import SubscriptionRegistry
from .supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MarketDataMultiplexer:
    """Shares a single upstream market-data connection across subscribers.

    Lifecycle:
        mux = MarketDataMultiplexer(WebsocketTransport(), settings)
        await mux.start()
        handle = mux.subscribe(["BTCUSDT"], ["ticker", "trade"], on_record)
        mux.snapshot(StreamKey.of("BTCUSDT", "ticker"))
        mux.unsubscribe(handle)
        await mux.stop()

    All state lives on the event loop that called start(). subscribe() and
    unsubscribe() may be called from other threads; they are marshaled onto
    that loop and block only until it has applied the change. Callbacks always
    run on the loop thread and must not block.
    """

    def __init__(
        self,
        transport: Transport,
        settings: MultiplexerSettings | None = None,
        *,
        on_exhausted: Callable[[ExhaustedReconnectError], None] | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or MultiplexerSettings()
        self._cache = SnapshotCache(
            staleness=self._settings.cache_staleness,
            capacity=self._settings.cache_capacity,
            clock=clock,
        )
        self._registry = SubscriptionRegistry()
        self._dispatcher = Dispatcher(self._registry, self._cache)
        self._supervisor = ConnectionSupervisor(
            transport,
            self._settings.url,
            on_data=self._on_data,
            replay_keys=self._registry.active_stream_keys,
            heartbeat_interval=self._settings.heartbeat_interval,
            reconnect_base=self._settings.reconnect_base,
            reconnect_cap=self._settings.reconnect_cap,
            max_attempts=self._settings.max_reconnect_attempts,
            on_exhausted=on_exhausted,
            on_state_change=on_state_change,
            clock=clock,
            sleep=sleep,
        )
        self._registry.attach(self._supervisor)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._dropped: int = 0

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind to the running loop and start connecting. No-op if running."""
        self._loop = asyncio.get_running_loop()
        await self._supervisor.start()

    async def stop(self) -> None:
        """Stop for good. Subscriptions stay registered but receive nothing more."""
        await self._supervisor.stop()

    async def force_reconnect(self) -> None:
        await self._supervisor.force_reconnect()

    # --- Host API ---

    def subscribe(
        self,
        symbols: list[str],
        kinds: list[StreamKind | str],
        on_record: RecordCallback,
        interval: str | None = None,
    ) -> SubscriptionHandle:
        """Register interest in symbols x kinds. Returns a handle for unsubscribe().

        Fresh cached records for the requested keys are delivered to on_record
        before this returns. Raises ValueError for empty input or an unknown
        kind or candle interval.
        """
        if not symbols or not kinds:
            raise ValueError("subscribe() needs at least one symbol and one kind")
        keys = build_stream_keys(symbols, kinds, interval)
        return self._call_on_loop(self._subscribe, keys, on_record)

    def unsubscribe(self, handle: SubscriptionHandle | str) -> None:
        """Remove a subscription. Unknown or already-removed handles are ignored."""
        subscription_id = handle.id if isinstance(handle, SubscriptionHandle) else handle
        self._call_on_loop(self._registry.unsubscribe, subscription_id)

    def snapshot(self, key: StreamKey) -> NormalizedRecord | None:
        """Latest cached record for the key, or None if absent or stale. Thread-safe."""
        return self._cache.get(key)

    def stats(self) -> MultiplexerStats:
        supervisor = self._supervisor
        return MultiplexerStats(
            connected=supervisor.is_open,
            state=supervisor.state,
            active_subscriptions=len(self._registry),
            active_stream_keys=len(self._registry.active_stream_keys()),
            messages_processed=self._dispatcher.records_dispatched,
            reconnect_attempts=supervisor.reconnect_attempts,
            total_reconnects=supervisor.total_reconnects,
            dropped_messages=supervisor.dropped_messages + self._dropped,
            cached_records=len(self._cache),
        )

    @property
    def state(self) -> ConnectionState:
        return self._supervisor.state

    @property
    def settings(self) -> MultiplexerSettings:
        return self._settings

    # --- Internal ---

    def _subscribe(self, keys: frozenset[StreamKey], on_record: RecordCallback) -> SubscriptionHandle:
        subscription = self._registry.subscribe(keys, on_record)
        self._dispatcher.replay_snapshots(subscription)
        return subscription.handle

    def _on_data(self, stream: str, data: Any) -> None:
        try:
            record = normalize(stream, data)
        except MalformedMessageError as e:
            self._dropped += 1
            logger.warning("Dropped message: %s", e)
            return
        self._dispatcher.on_record(record)

    def _call_on_loop(self, fn: Callable[..., T], *args: Any) -> T:
        """Run fn on the multiplexer's loop and return its result.

        Called directly when already on the loop thread or before start().
        """
        loop = self._loop
        if loop is None or loop.is_closed() or not loop.is_running() or _running_loop() is loop:
            return fn(*args)

        future: concurrent.futures.Future = concurrent.futures.Future()

        def runner() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        loop.call_soon_threadsafe(runner)
        return future.result()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
