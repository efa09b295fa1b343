"""
Websocket handler registry and broadcast fan-out.

Every accepted socket becomes a Channel with its own outbox; a single writer
task drains it, so responses and broadcasts reach each client in the order
they were produced. ``broadcast`` only enqueues, which lets the scheduler
publish a transition and store it without yielding in between.
"""

from __future__ import annotations

import asyncio
import traceback
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from server.logging_utils import get_logger
from shared import protocol
from shared.errors import InvalidRequest, ProtocolError, QueueError

Handler = Callable[[Any], Awaitable[Any]]

# frames a channel may hold before its client is treated as stalled
OUTBOX_LIMIT = 1000


class ChannelLogger:
    """Connect / disconnect / error events for websocket channels."""

    def __init__(self):
        self.logger = get_logger()

    def log_connect(self, websocket: WebSocket, channel_id: str):
        client_addr = websocket.client.host if websocket.client else "unknown"
        self.logger.info(
            "websocket_connect",
            channel_id=channel_id,
            client_addr=client_addr,
            path=str(websocket.url.path),
        )

    def log_disconnect(self, channel_id: str, reason: str = "normal"):
        self.logger.info("websocket_disconnect", channel_id=channel_id, reason=reason)

    def log_error(self, channel_id: str, error: str):
        self.logger.error(
            "websocket_error",
            channel_id=channel_id,
            error=error,
            stack_trace=traceback.format_exc(),
        )

    def log_message(self, channel_id: str, direction: str, message_type: str, size: int):
        self.logger.debug(
            f"websocket_{direction}",
            channel_id=channel_id,
            message_type=message_type,
            size_bytes=size,
        )


class Channel:
    def __init__(self, websocket: WebSocket, channel_id: str, ws_logger: ChannelLogger, outbox_limit: int = OUTBOX_LIMIT):
        self.websocket = websocket
        self.id = channel_id
        self.ws_logger = ws_logger
        self.closed = False
        self._outbox: "asyncio.Queue[str]" = asyncio.Queue(maxsize=outbox_limit)
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return (
            not self.closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def start(self) -> None:
        self._writer = asyncio.create_task(self._write_loop(), name=f"channel-writer-{self.id}")

    def send(self, frame: str) -> bool:
        if not self.is_open:
            return False
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            self.ws_logger.log_error(self.id, f"outbox full ({self._outbox.maxsize} frames), dropping client")
            self.abort()
            return False
        return True

    def abort(self) -> None:
        """Stop writing to a client that stopped reading and close its socket."""
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
        self._closer = asyncio.create_task(self._close_socket(1008))

    async def _close_socket(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except (RuntimeError, OSError) as exc:
            self.ws_logger.log_error(self.id, f"close failed: {exc}")

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send_text(frame)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                self.ws_logger.log_error(self.id, f"send failed: {exc}")
                self.closed = True
                return

    async def close(self) -> None:
        writer = self._writer
        if writer is not None and self.is_open:
            # let queued frames go out before tearing down
            try:
                await asyncio.wait_for(self._drain(writer), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        self.closed = True
        self._writer = None
        closer, self._closer = self._closer, None
        if closer is not None:
            await closer
        if writer is None:
            return
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass

    async def _drain(self, writer: asyncio.Task) -> None:
        while not self._outbox.empty() and not writer.done():
            await asyncio.sleep(0.01)


class ChannelHub:
    def __init__(self, outbox_limit: int = OUTBOX_LIMIT):
        self.outbox_limit = outbox_limit
        self._handlers: Dict[str, Handler] = {}
        self._channels: Dict[str, Channel] = {}
        self.ws_logger = ChannelLogger()
        self.slog = get_logger()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def register(self, type_: str, handler: Handler) -> None:
        if type_ in self._handlers:
            self.slog.warning("handler_replaced", message_type=type_)
        self._handlers[type_] = handler

    @property
    def handler_types(self) -> Set[str]:
        return set(self._handlers)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def dispatch(self, envelope: protocol.Envelope) -> str:
        """Run the handler for one call envelope and return the reply frame."""
        handler = self._handlers.get(envelope.type)
        if handler is None:
            return protocol.encode_error(
                InvalidRequest(f"Unknown message type: {envelope.type}"), envelope.request_id
            )
        try:
            result = await handler(envelope.data)
        except QueueError as exc:
            return protocol.encode_error(exc, envelope.request_id)
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
            )
            return protocol.encode_error(InvalidRequest(f"Invalid {envelope.type} payload: {detail}"), envelope.request_id)
        except Exception as exc:
            self.slog.error(
                "handler_failed",
                request_id=envelope.request_id,
                message_type=envelope.type,
                error=f"{type(exc).__name__}: {exc}",
                stack_trace=traceback.format_exc(),
            )
            return protocol.encode_error(QueueError(str(exc) or type(exc).__name__), envelope.request_id)
        return protocol.encode_response(envelope.type, envelope.request_id, result)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------
    def attach(self, websocket: WebSocket) -> Channel:
        """Start tracking an accepted websocket as a broadcast target."""
        channel = Channel(websocket, str(uuid.uuid4())[:8], self.ws_logger, self.outbox_limit)
        channel.start()
        self._channels[channel.id] = channel
        self.ws_logger.log_connect(websocket, channel.id)
        return channel

    async def detach(self, channel: Channel, reason: str = "normal") -> None:
        self._channels.pop(channel.id, None)
        await channel.close()
        self.ws_logger.log_disconnect(channel.id, reason)

    async def serve(self, websocket: WebSocket) -> None:
        """Own one websocket for its whole life: accept, read calls, clean up."""
        await websocket.accept()
        channel = self.attach(websocket)

        calls: Set[asyncio.Task] = set()
        reason = "normal"
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes") or b""
                self.ws_logger.log_message(channel.id, "receive", "frame", len(frame))
                try:
                    envelope = protocol.decode(frame)
                except ProtocolError as exc:
                    self.slog.warning("websocket_frame_dropped", channel_id=channel.id, error=exc.message)
                    continue
                task = asyncio.create_task(self._answer(channel, envelope))
                calls.add(task)
                task.add_done_callback(calls.discard)
        except WebSocketDisconnect as exc:
            reason = f"code={exc.code}"
        except RuntimeError as exc:
            reason = "error"
            self.ws_logger.log_error(channel.id, str(exc))
        finally:
            for task in list(calls):
                task.cancel()
            await self.detach(channel, reason)

    async def _answer(self, channel: Channel, envelope: protocol.Envelope) -> None:
        reply = await self.dispatch(envelope)
        if not channel.send(reply):
            self.slog.debug("response_dropped", channel_id=channel.id, message_type=envelope.type)

    def broadcast(self, type_: str, data: Any = None) -> int:
        """Queue one frame on every open channel; returns how many received it."""
        if not self._channels:
            return 0
        frame = protocol.encode(type_, data)
        delivered = 0
        for channel_id, channel in list(self._channels.items()):
            if channel.closed:
                self._channels.pop(channel_id, None)
                self.ws_logger.log_disconnect(channel_id, "send_failed")
                continue
            if channel.send(frame):
                delivered += 1
            elif channel.closed:
                self._channels.pop(channel_id, None)
                self.ws_logger.log_disconnect(channel_id, "outbox_full")
        return delivered
