"""Connection supervisor: owns the single upstream connection."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .errors import ExhaustedReconnectError, MalformedMessageError, TransportError
from .interface import Transport, UpstreamConnection, UpstreamControl
from .models import ConnectionState, StreamKey

logger = logging.getLogger(__name__)

DataHandler = Callable[[str, Any], None]


class ConnectionSupervisor(UpstreamControl):
    """Runs the connection state machine on the event loop.

        DISCONNECTED --start()--> CONNECTING --open--> OPEN
        OPEN --close/error/heartbeat timeout--> RECONNECTING --backoff--> CONNECTING
        any --stop()--> STOPPED (terminal)

    While OPEN three tasks run against the connection: a reader, a writer
    draining the outbound command queue, and a heartbeat. The first one to
    fail ends the connection epoch.

    Backoff before reconnect attempt n (0-based) is min(base * 2**n, cap).
    The counter resets on every successful open. After max_attempts failed
    reconnects in a row the supervisor reports ExhaustedReconnectError via
    on_exhausted and settles in DISCONNECTED; start() may be called again.

    On every open the full set from replay_keys() is subscribed in one batch.
    """

    def __init__(
        self,
        transport: Transport,
        url: str,
        on_data: DataHandler,
        replay_keys: Callable[[], Iterable[StreamKey]],
        *,
        heartbeat_interval: float = 30.0,
        reconnect_base: float = 5.0,
        reconnect_cap: float = 30.0,
        max_attempts: int = 10,
        on_exhausted: Callable[[ExhaustedReconnectError], None] | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._url = url
        self._on_data = on_data
        self._replay_keys = replay_keys
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_base = reconnect_base
        self._reconnect_cap = reconnect_cap
        self._max_attempts = max_attempts
        self._on_exhausted = on_exhausted
        self._on_state_change = on_state_change
        self._clock = clock
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._task: asyncio.Task | None = None
        self._conn: UpstreamConnection | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._reconnect_now: asyncio.Event | None = None

        # Streams subscribed on the current connection
        self._upstream_streams: set[StreamKey] = set()
        self._pending_requests: dict[int, str] = {}
        self._request_ids = itertools.count(1)

        self._attempt = 0
        self._last_alive = 0.0
        self.total_reconnects: int = 0
        self.messages_received: int = 0
        self.dropped_messages: int = 0

    # --- Lifecycle ---

    async def start(self) -> None:
        """Begin connecting in the background. No-op if already running."""
        if self._state is ConnectionState.STOPPED:
            logger.warning("Supervisor is stopped; start() ignored")
            return
        if self._task is not None and not self._task.done():
            return
        self._attempt = 0
        self._reconnect_now = asyncio.Event()
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run(), name="marketmux-supervisor")
        logger.info("Supervisor started for %s", self._url)

    async def stop(self) -> None:
        """Cancel reconnects, close the connection and enter STOPPED. Idempotent.

        No reconnect can happen once this returns.
        """
        if self._state is ConnectionState.STOPPED:
            return
        self._set_state(ConnectionState.STOPPED)
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Supervisor stopped")

    async def force_reconnect(self) -> None:
        """Drop the current connection and reconnect without backoff."""
        if self._state is ConnectionState.STOPPED:
            return
        logger.info("Forcing upstream reconnect")
        self._attempt = 0
        if self._task is None or self._task.done():
            await self.start()
            return
        if self._reconnect_now is not None:
            self._reconnect_now.set()

    async def drain(self) -> None:
        """Wait until every queued command has been written (or discarded)."""
        if self._outbox is not None:
            await self._outbox.join()

    # --- UpstreamControl ---

    def issue_subscribe(self, keys: Iterable[StreamKey]) -> None:
        if self._state is not ConnectionState.OPEN:
            logger.debug("Not connected; subscribe deferred to next replay")
            return
        new_keys = set(keys) - self._upstream_streams
        if not new_keys:
            return
        self._upstream_streams |= new_keys
        self._enqueue("SUBSCRIBE", new_keys)

    def issue_unsubscribe(self, keys: Iterable[StreamKey]) -> None:
        if self._state is not ConnectionState.OPEN:
            return
        gone = set(keys) & self._upstream_streams
        if not gone:
            return
        self._upstream_streams -= gone
        self._enqueue("UNSUBSCRIBE", gone)

    # --- Introspection ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failed attempts since the last successful open."""
        return self._attempt

    @property
    def upstream_streams(self) -> frozenset[StreamKey]:
        return frozenset(self._upstream_streams)

    def backoff_delay(self, attempt: int) -> float:
        return min(self._reconnect_base * (2**attempt), self._reconnect_cap)

    # --- Internal: state machine ---

    def _set_state(self, state: ConnectionState) -> None:
        if self._state is state:
            return
        if self._state is ConnectionState.STOPPED:
            return  # Terminal
        logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("on_state_change callback failed")

    async def _run(self) -> None:
        """Connect, serve, back off, repeat. Ends on stop() or exhaustion."""
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                conn = await self._transport.connect(self._url)
            except TransportError as e:
                logger.warning("Upstream connect failed: %s", e)
                error: BaseException | None = e
            else:
                error = await self._serve(conn)

            if not await self._wait_before_retry(error):
                return

    async def _serve(self, conn: UpstreamConnection) -> BaseException | None:
        """Run one connection epoch. Returns the error that ended it."""
        self._conn = conn
        self._attempt = 0
        self._last_alive = self._clock()
        self._outbox = asyncio.Queue()
        self._upstream_streams.clear()
        self._pending_requests.clear()
        if self._reconnect_now is not None:
            # A reconnect requested while connecting is satisfied by this connection
            self._reconnect_now.clear()
        self._set_state(ConnectionState.OPEN)
        logger.info("Upstream connection open: %s", self._url)
        self._replay()

        tasks = [
            asyncio.create_task(self._read_loop(conn), name="marketmux-reader"),
            asyncio.create_task(self._write_loop(conn, self._outbox), name="marketmux-writer"),
            asyncio.create_task(self._heartbeat_loop(conn), name="marketmux-heartbeat"),
        ]
        if self._reconnect_now is not None:
            tasks.append(asyncio.create_task(self._reconnect_now.wait(), name="marketmux-force"))

        error: BaseException | None = None
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    error = task.exception()
        finally:
            # Leave OPEN before awaiting so no command is queued onto a dead connection
            self._set_state(ConnectionState.RECONNECTING)
            for task in tasks:
                task.cancel()
            self._conn = None
            self._upstream_streams.clear()
            self._discard_outbox()
            try:
                await asyncio.gather(*tasks, return_exceptions=True)
            finally:
                await conn.close()

        if isinstance(error, TransportError):
            logger.warning("Upstream connection lost: %s", error)
        elif error is not None:
            logger.error("Upstream connection failed unexpectedly", exc_info=error)
        return error

    async def _wait_before_retry(self, error: BaseException | None) -> bool:
        """Sleep out the backoff. False means give up."""
        if self._reconnect_now is not None and self._reconnect_now.is_set():
            self._reconnect_now.clear()
            self._attempt = 0
            self.total_reconnects += 1
            return True

        if self._attempt >= self._max_attempts:
            exhausted = ExhaustedReconnectError(self._attempt, error)
            logger.error("Upstream reconnection exhausted: %s", exhausted)
            self._set_state(ConnectionState.DISCONNECTED)
            if self._on_exhausted is not None:
                try:
                    self._on_exhausted(exhausted)
                except Exception:
                    logger.exception("on_exhausted callback failed")
            return False

        delay = self.backoff_delay(self._attempt)
        self._attempt += 1
        self.total_reconnects += 1
        self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._attempt,
            self._max_attempts,
        )

        waiters = [asyncio.create_task(self._sleep(delay))]
        if self._reconnect_now is not None:
            waiters.append(asyncio.create_task(self._reconnect_now.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        if self._reconnect_now is not None and self._reconnect_now.is_set():
            self._reconnect_now.clear()
            self._attempt = 0
        return True

    # --- Internal: connection tasks ---

    async def _read_loop(self, conn: UpstreamConnection) -> None:
        while True:
            frame = await conn.recv()
            self._last_alive = self._clock()
            self.messages_received += 1
            try:
                self._handle_frame(frame)
            except MalformedMessageError as e:
                self.dropped_messages += 1
                logger.warning("Dropped upstream frame: %s", e)

    async def _write_loop(self, conn: UpstreamConnection, outbox: asyncio.Queue[str]) -> None:
        while True:
            message = await outbox.get()
            try:
                await conn.send(message)
            finally:
                outbox.task_done()

    async def _heartbeat_loop(self, conn: UpstreamConnection) -> None:
        """Probe liveness every interval and fail the connection once it goes quiet.

        Silence is checked after each sleep against a strict 2 x interval
        bound, so a dead socket is detected on the third tick (between 2 and
        3 intervals after the last frame or pong).
        """
        interval = self._heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            silent_for = self._clock() - self._last_alive
            if silent_for > 2 * interval:
                raise TransportError(f"heartbeat timeout: no acknowledgment for {silent_for:.1f}s")
            waiter = await conn.ping()
            asyncio.ensure_future(waiter).add_done_callback(self._on_pong)

    def _on_pong(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self._last_alive = self._clock()

    # --- Internal: wire protocol ---

    def _handle_frame(self, frame: str | bytes) -> None:
        if isinstance(frame, bytes):
            try:
                frame = frame.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedMessageError("binary frame is not UTF-8") from e
        try:
            payload = json.loads(frame)
        except ValueError as e:
            raise MalformedMessageError(f"invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedMessageError(f"expected JSON object, got {type(payload).__name__}")

        stream = payload.get("stream")
        if isinstance(stream, str) and "data" in payload:
            self._on_data(stream, payload["data"])
            return

        if "id" in payload and ("result" in payload or "error" in payload):
            self._handle_ack(payload)
            return

        raise MalformedMessageError("frame is neither data nor acknowledgment")

    def _handle_ack(self, payload: dict) -> None:
        request_id = payload["id"]
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            raise MalformedMessageError(f"acknowledgment id must be an integer, got {request_id!r}")
        method = self._pending_requests.pop(request_id, "unknown")
        if payload.get("error"):
            logger.warning("Upstream rejected %s request %s: %s", method, payload["id"], payload["error"])
        else:
            logger.debug("Upstream acknowledged %s request %s", method, payload["id"])

    def _replay(self) -> None:
        keys = set(self._replay_keys())
        if not keys:
            return
        self._upstream_streams = keys
        self._enqueue("SUBSCRIBE", keys)
        logger.info("Replayed %d upstream streams", len(keys))

    def _enqueue(self, method: str, keys: set[StreamKey]) -> None:
        if self._outbox is None:
            logger.debug("No open connection; %s deferred to next replay", method)
            return
        request_id = next(self._request_ids)
        self._pending_requests[request_id] = method
        message = {
            "method": method,
            "params": sorted(key.stream_name for key in keys),
            "id": request_id,
        }
        self._outbox.put_nowait(json.dumps(message))
        logger.debug("%s %s (id %d)", method, message["params"], request_id)

    def _discard_outbox(self) -> None:
        outbox, self._outbox = self._outbox, None
        if outbox is None:
            return
        while True:
            try:
                outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            outbox.task_done()
