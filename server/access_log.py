"""
ASGI access log for the file server.

Wraps ``send`` to capture the response status and body size, then emits one
``http_in`` event per request. Websocket and lifespan scopes pass straight
through.
"""

import secrets
import time
from typing import Any, Dict, Optional

from starlette.types import ASGIApp, Receive, Scope, Send

from server.logging_utils import get_logger


class AccessLogMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app
        self.logger = get_logger()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        t0 = time.time()
        request_id = secrets.token_hex(4)
        method = scope.get("method", "")
        path = scope.get("path", "")
        client = scope.get("client")
        remote_addr = f"{client[0]}:{client[1]}" if client and len(client) >= 2 else "unknown"

        status_code: Optional[int] = None
        bytes_sent = 0

        async def send_wrapper(message: Dict[str, Any]) -> None:
            nonlocal status_code, bytes_sent
            if message["type"] == "http.response.start":
                status_code = int(message.get("status", 0) or 0)
            elif message["type"] == "http.response.body":
                bytes_sent += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            dur_ms = (time.time() - t0) * 1000.0
            # health probes are noisy
            if path.endswith("/health"):
                self.logger.debug(
                    "http_in",
                    request_id=request_id,
                    method=method,
                    path=path,
                    status_code=status_code,
                    duration_ms=dur_ms,
                )
            else:
                self.logger.http_in(
                    method=method,
                    path=path,
                    remote_addr=remote_addr,
                    request_id=request_id,
                    status_code=status_code,
                    bytes_sent=bytes_sent,
                    duration_ms=dur_ms,
                )
