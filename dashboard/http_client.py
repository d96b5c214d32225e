"""
Instrumented HTTP client for calls to generation providers.

Wraps httpx.AsyncClient so every request to Ollama, ComfyUI or a cloud
API produces one http_out / http_out_error log line. Transport errors are
logged and re-raised untouched; translating them into dashboard errors is
the job of backends.base.
"""

import uuid
from typing import Optional

import httpx

from dashboard.logging_utils import get_logger, timer


LOCAL_DAEMON_TIMEOUT = httpx.Timeout(connect=5.0, read=300.0, write=60.0, pool=10.0)
CLOUD_API_TIMEOUT = httpx.Timeout(connect=10.0, read=120.0, write=30.0, pool=10.0)


class LoggedHTTPClient:
    """
    HTTP client that logs all requests and responses.

    Usage:
        async with LoggedHTTPClient("ollama", base_url=url) as client:
            resp = await client.post("/api/chat", json=payload)
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **client_kwargs
    ):
        """
        Args:
            service: Provider name used in log lines (e.g., "ollama", "openai")
            base_url: Base URL for the provider
            timeout: Request timeout configuration
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            **client_kwargs: Additional arguments for httpx.AsyncClient
        """
        self.service = service
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout
        if transport is not None:
            kwargs["transport"] = transport

        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(**self._client_kwargs)
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.__aexit__(exc_type, exc_val, exc_tb)
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request and log its outcome."""
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        timeout = kwargs.get("timeout")
        if isinstance(timeout, httpx.Timeout):
            timeout_value = timeout.read or timeout.connect
        else:
            timeout_value = timeout

        request_body = kwargs.get("json") or kwargs.get("data") or kwargs.get("content")
        log_fields = dict(
            service=self.service,
            method=method,
            url=str(url),
            request_id=request_id,
            timeout=timeout_value,
            request_body=request_body,
        )

        with timer() as t:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                self.logger.http_out(duration_ms=t.stop(), error=f"Timeout: {e}", **log_fields)
                raise
            except httpx.ConnectError as e:
                self.logger.http_out(duration_ms=t.stop(), error=f"Connection error: {e}", **log_fields)
                raise
            except httpx.HTTPError as e:
                self.logger.http_out(duration_ms=t.stop(), error=str(e), **log_fields)
                raise

            self.logger.http_out(
                status_code=response.status_code,
                response_body=response.text if response.status_code >= 400 else None,
                duration_ms=t.stop(),
                **log_fields,
            )
            return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)


def provider_client(
    service: str,
    base_url: str,
    *,
    local: bool,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    headers: Optional[dict] = None,
) -> LoggedHTTPClient:
    """Create a logged client with the timeout profile for a local daemon or a cloud API."""
    kwargs = {}
    if headers:
        kwargs["headers"] = headers
    return LoggedHTTPClient(
        service=service,
        base_url=base_url,
        timeout=LOCAL_DAEMON_TIMEOUT if local else CLOUD_API_TIMEOUT,
        transport=transport,
        **kwargs,
    )
