"""Tests for the logged provider HTTP client and header redaction."""

from unittest.mock import MagicMock

import httpx
import pytest

from dashboard.http_client import CLOUD_API_TIMEOUT, LOCAL_DAEMON_TIMEOUT, LoggedHTTPClient, provider_client
from dashboard.logging_utils import sanitize_headers


def test_sanitize_headers_redacts_credentials():
    headers = {
        "Authorization": "Bearer sk-secret",
        "x-api-key": "sk-ant-secret",
        "x-goog-api-key": "AIza-secret",
        "Content-Type": "application/json",
    }
    clean = sanitize_headers(headers)
    assert clean["Authorization"] == "***REDACTED***"
    assert clean["x-api-key"] == "***REDACTED***"
    assert clean["x-goog-api-key"] == "***REDACTED***"
    assert clean["Content-Type"] == "application/json"
    assert headers["Authorization"] == "Bearer sk-secret"


def test_sanitize_headers_empty():
    assert sanitize_headers(None) == {}


def test_timeout_profiles():
    assert provider_client("ollama", "http://x", local=True)._client_kwargs["timeout"] is LOCAL_DAEMON_TIMEOUT
    assert provider_client("openai", "https://x", local=False)._client_kwargs["timeout"] is CLOUD_API_TIMEOUT


@pytest.mark.asyncio
async def test_successful_request_logs_http_out():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
    async with LoggedHTTPClient("ollama", base_url="http://ollama.test", transport=transport) as client:
        client.logger = MagicMock()
        resp = await client.get("/api/tags")

    assert resp.json() == {"ok": True}
    kwargs = client.logger.http_out.call_args.kwargs
    assert kwargs["service"] == "ollama"
    assert kwargs["status_code"] == 200
    assert kwargs["response_body"] is None


@pytest.mark.asyncio
async def test_connect_error_is_logged_and_reraised():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with LoggedHTTPClient("comfyui", base_url="http://comfy.test", transport=httpx.MockTransport(refuse)) as client:
        client.logger = MagicMock()
        with pytest.raises(httpx.ConnectError):
            await client.post("/prompt", json={"prompt": {}})

    kwargs = client.logger.http_out.call_args.kwargs
    assert kwargs["error"].startswith("Connection error")
    assert kwargs["request_body"] == {"prompt": {}}
