"""
Instrumented HTTP client for calls to the image provider.

Wraps httpx.AsyncClient so every outbound request is logged with method,
URL, status and duration. Unlike a per-request client, one instance is
kept open for the life of the process and shared by the gateway.
"""

import uuid
from typing import Dict, Optional

import httpx

from relay.logging_utils import get_logger, timer


class LoggedHTTPClient:
    """
    HTTP client that logs all requests and responses.

    Logs:
    - Request method, URL, body (when LOG_HTTP_BODY is on)
    - Response status, error bodies, duration
    - Timeouts, connection errors and other transport failures
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        **client_kwargs
    ):
        self.service = service
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout

        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None
        self._headers: Dict[str, str] = {}

    async def open(self) -> "LoggedHTTPClient":
        if self._client is None:
            self._client = httpx.AsyncClient(**self._client_kwargs)
        return self

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def set_header(self, name: str, value: str) -> None:
        """Attach a header (e.g. a session token) to every later request."""
        self._headers[name] = value

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not opened. Call open() or use 'async with'.")
        return self._client

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]
        request_body = kwargs.get("json") or kwargs.get("data")

        if self._headers:
            headers = dict(self._headers)
            headers.update(kwargs.pop("headers", None) or {})
            kwargs["headers"] = headers

        def _log_failure(error: str, elapsed_ms: float) -> None:
            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
                request_body=request_body,
                duration_ms=elapsed_ms,
                error=error,
            )

        with timer() as t:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                _log_failure(f"Timeout: {e}", t.stop())
                raise
            except httpx.ConnectError as e:
                _log_failure(f"Connection error: {e}", t.stop())
                raise
            except Exception as e:
                _log_failure(str(e) or e.__class__.__name__, t.stop())
                raise

            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
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
