"""
Client side of the genqueue websocket protocol.

ConnectionManager owns one websocket and provides:
- ``call(type, data)``: request/response correlated by integer ``requestId``
- ``subscribe(type, callback)``: broadcast fan-out in registration order
- automatic reconnect with capped exponential backoff after a drop
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared import protocol
from shared.errors import Disconnected, ProtocolError, QueueError, RequestTimeout, error_from_payload

log = logging.getLogger("genqueue.client")

CONNECT_TIMEOUT_S = 5.0
CALL_TIMEOUT_S = 10.0
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BASE_DELAY_S = 1.0
RECONNECT_MAX_DELAY_S = 5.0

Callback = Callable[[Any], Any]
Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class PendingCall:
    type: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


async def default_connector(url: str):
    return await websockets.connect(url, ping_interval=20, ping_timeout=30, max_size=None)


def reconnect_delay(attempt: int, base_s: float = RECONNECT_BASE_DELAY_S, cap_s: float = RECONNECT_MAX_DELAY_S) -> float:
    """Backoff before reconnect ``attempt`` (1-based): 1, 2, 4, 5, 5 ... seconds."""
    return min(base_s * 2 ** (attempt - 1), cap_s)


class ConnectionManager:
    def __init__(
        self,
        url: str,
        connector: Optional[Connector] = None,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
        call_timeout_s: float = CALL_TIMEOUT_S,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_base_delay_s: float = RECONNECT_BASE_DELAY_S,
        reconnect_max_delay_s: float = RECONNECT_MAX_DELAY_S,
    ):
        self.url = url
        self.connector = connector or default_connector
        self.connect_timeout_s = connect_timeout_s
        self.call_timeout_s = call_timeout_s
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay_s = reconnect_base_delay_s
        self.reconnect_max_delay_s = reconnect_max_delay_s

        self.state = ConnectionState.DISCONNECTED
        self._ws: Any = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingCall] = {}
        self._subscribers: Dict[str, Dict[Callback, None]] = {}
        self._callback_tasks: Set[asyncio.Task] = set()
        self._connecting: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._attempts = 0
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            log.debug("Connection state %s -> %s", self.state.value, state.value)
            self.state = state

    # ------------------------------------------------------------------
    # Connect / close
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the socket. Concurrent callers share one attempt."""
        if self.state == ConnectionState.CONNECTED:
            return
        if self.state == ConnectionState.FAILED:
            self._attempts = 0
        self._closing = False
        await self._await_open(self._begin_open())

    def _begin_open(self) -> asyncio.Future:
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._open())
        return self._connecting

    async def _await_open(self, opening: asyncio.Future) -> None:
        try:
            await asyncio.shield(opening)
        except asyncio.CancelledError:
            if opening.cancelled() and self._closing:
                raise Disconnected("Connection closed") from None
            raise

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await asyncio.wait_for(self.connector(self.url), timeout=self.connect_timeout_s)
        except asyncio.TimeoutError as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise RequestTimeout(f"Connecting to {self.url} timed out after {self.connect_timeout_s}s") from exc
        except (OSError, WebSocketException) as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise Disconnected(f"Could not connect to {self.url}: {exc}") from exc

        if self._closing:
            await self._close_socket(ws)
            self._set_state(ConnectionState.DISCONNECTED)
            raise Disconnected("Connection closed")

        self._ws = ws
        self._attempts = 0
        self._reconnect_task = None
        self._set_state(ConnectionState.CONNECTED)
        self._reader = asyncio.create_task(self._read_loop(ws))
        log.info("Connected to %s", self.url)

    async def _close_socket(self, ws) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as exc:
            log.debug("Error while closing socket: %s", exc)

    async def close(self) -> None:
        """Shut down for good: no reconnect, pending calls fail with Disconnected."""
        self._closing = True
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()
        opening, self._connecting = self._connecting, None
        if opening is not None and not opening.done():
            opening.cancel()
            try:
                await opening
            except asyncio.CancelledError:
                pass
            except QueueError as exc:
                log.debug("Connect attempt ended during close: %s", exc.message)
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)
        self._fail_pending(Disconnected("Connection closed"))
        self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    async def call(self, type_: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        await self.connect()
        ws = self._ws
        if ws is None:
            raise Disconnected("Not connected")

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        timeout = self.call_timeout_s if timeout is None else timeout
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = PendingCall(type_, future, timer)
        try:
            await ws.send(protocol.encode(type_, data, request_id))
        except ConnectionClosed as exc:
            self._take(request_id)
            raise Disconnected(f"Connection lost while sending {type_}") from exc
        except BaseException:
            self._take(request_id)
            raise

        try:
            return await future
        finally:
            self._take(request_id)

    def _take(self, request_id: int) -> Optional[PendingCall]:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._take(request_id)
        if pending is not None and not pending.future.done():
            pending.future.set_exception(RequestTimeout(f"Request {pending.type} timed out after {timeout}s"))

    def _fail_pending(self, error: QueueError) -> None:
        for request_id in list(self._pending):
            pending = self._take(request_id)
            if pending is not None and not pending.future.done():
                pending.future.set_exception(type(error)(error.message))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, type_: str, callback: Callback) -> Callable[[], None]:
        self._subscribers.setdefault(type_, {})[callback] = None
        return lambda: self.unsubscribe(type_, callback)

    def unsubscribe(self, type_: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(type_)
        if not callbacks:
            return
        callbacks.pop(callback, None)
        if not callbacks:
            del self._subscribers[type_]

    def _emit(self, type_: str, data: Any) -> None:
        for callback in list(self._subscribers.get(type_, ())):
            try:
                result = callback(data)
            except Exception:
                log.exception("Subscriber for %s failed", type_)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Async subscriber failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # Reading / reconnect
    # ------------------------------------------------------------------
    async def _read_loop(self, ws) -> None:
        reason = "closed by server"
        try:
            async for frame in ws:
                self._handle_frame(frame)
        except ConnectionClosed as exc:
            reason = str(exc) or "connection closed"
        self._handle_disconnect(ws, reason)

    def _handle_frame(self, frame: Any) -> None:
        try:
            envelope = protocol.decode(frame)
        except ProtocolError as exc:
            log.warning("Dropping frame: %s", exc.message)
            return

        if protocol.is_broadcast(envelope):
            self._emit(envelope.type, envelope.data)
            return

        pending = self._take(envelope.request_id)
        if pending is None:
            log.debug("Ignoring late reply %s for request %s", envelope.type, envelope.request_id)
            return
        if pending.future.done():
            return
        if envelope.is_error:
            pending.future.set_exception(error_from_payload(envelope.data))
        else:
            pending.future.set_result(envelope.data)

    def _handle_disconnect(self, ws, reason: str) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader = None
        self._set_state(ConnectionState.DISCONNECTED)
        log.warning("Disconnected from %s: %s", self.url, reason)
        self._fail_pending(Disconnected(f"Connection lost: {reason}"))
        if not self._closing:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._attempts >= self.max_reconnect_attempts:
            self._set_state(ConnectionState.FAILED)
            log.error("Giving up on %s after %d reconnect attempts", self.url, self._attempts)
            return
        self._attempts += 1
        delay = reconnect_delay(self._attempts, self.reconnect_base_delay_s, self.reconnect_max_delay_s)
        log.info("Reconnecting to %s in %.1fs (attempt %d/%d)", self.url, delay, self._attempts,
                 self.max_reconnect_attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        # stays registered as _reconnect_task until the attempt settles so close() can cancel it
        await asyncio.sleep(delay)
        if self._closing or self.state == ConnectionState.CONNECTED:
            self._release_reconnect()
            return
        try:
            await self._await_open(self._begin_open())
        except (Disconnected, RequestTimeout) as exc:
            log.warning("Reconnect attempt %d failed: %s", self._attempts, exc.message)
            self._release_reconnect()
            if not self._closing:
                self._schedule_reconnect()

    def _release_reconnect(self) -> None:
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
