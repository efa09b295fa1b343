"""
Instrumented HTTP client wrapper for the generation backend.

Wraps httpx.AsyncClient so every outbound call is logged as ``http_out``
(or ``http_out_error``) with method, url, status and duration.
"""

import uuid
from typing import Optional

import httpx

from server.logging_utils import get_logger, timer


class LoggedHTTPClient:
    """
    HTTP client that logs all requests and responses.

    The underlying httpx.AsyncClient is created lazily on first use and
    lives until ``aclose()``; it can also be used as an async context manager.
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        **client_kwargs
    ):
        """
        Args:
            service: Service name for logging (e.g., "auto1111")
            base_url: Base URL for the service
            timeout: Request timeout configuration
            **client_kwargs: Additional arguments for httpx.AsyncClient
                (tests pass ``transport=httpx.MockTransport(...)``)
        """
        self.service = service
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url.rstrip("/")
        if timeout:
            kwargs["timeout"] = timeout
        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return str(self._client_kwargs.get("base_url", ""))

    async def __aenter__(self):
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(**self._client_kwargs)
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    def _timeout_value(self, timeout) -> Optional[float]:
        if timeout is None:
            timeout = self._client_kwargs.get("timeout")
        if isinstance(timeout, httpx.Timeout):
            return timeout.read or timeout.connect
        return timeout

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with logging. Transport errors are logged and re-raised.
        """
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]
        timeout_value = self._timeout_value(kwargs.get("timeout"))
        request_body = kwargs.get("json") or kwargs.get("data") or kwargs.get("content")

        def log_error(error: str, elapsed_ms: float) -> None:
            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
                timeout=timeout_value,
                request_body=request_body,
                duration_ms=elapsed_ms,
                error=error,
            )

        with timer() as t:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                log_error(f"Timeout: {e}", t.stop())
                raise
            except httpx.ConnectError as e:
                log_error(f"Connection error: {e}", t.stop())
                raise
            except httpx.HTTPError as e:
                log_error(str(e) or type(e).__name__, t.stop())
                raise

            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
                timeout=timeout_value,
                request_body=request_body,
                status_code=response.status_code,
                response_body=response.text if response.status_code >= 400 else None,
                duration_ms=t.stop(),
            )
            return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


def auto1111_client(base_url: str, timeout_s: float = 300.0, **client_kwargs) -> LoggedHTTPClient:
    """Create a logged HTTP client for the Automatic1111 API.

    Generation is slow, so the read timeout is measured in minutes while
    connects fail fast.
    """
    return LoggedHTTPClient(
        service="auto1111",
        base_url=base_url,
        timeout=httpx.Timeout(connect=10.0, read=timeout_s, write=60.0, pool=10.0),
        **client_kwargs
    )
