"""
Common contract for generation providers.

Each provider is one ProviderBackend subclass. Backends return the
normalized types below and raise only dashboard.errors exceptions: raw
httpx errors are translated in ``ProviderBackend.send``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from dashboard.errors import AuthError, ProviderConnectionError, UpstreamError, ValidationError
from dashboard.http_client import LoggedHTTPClient, provider_client

UPSTREAM_BODY_MAXLEN = 2000


@dataclass
class ChatResult:
    content: str
    finish_reason: str = "unknown"
    tokens_used: Optional[int] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": self.content,
            "finish_reason": self.finish_reason,
            "tokens_used": self.tokens_used,
            "model": self.model,
        }


@dataclass
class Artifact:
    filename: str
    data: bytes
    content_type: str = "image/png"


@dataclass
class ImageSubmission:
    """Outcome of submitting an image request.

    Asynchronous backends set ``token``; synchronous ones return ``artifacts``.
    """

    token: Optional[str] = None
    artifacts: List[Artifact] = field(default_factory=list)
    resolved: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ImageStatus:
    state: str  # running | completed | failed
    outputs: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None


class ProviderBackend:
    name = ""
    display_name = ""
    local = False
    default_model: Optional[str] = None
    supports_chat = True
    supports_image = False

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def requires_credential(self) -> bool:
        return not self.local

    def client(self, base_url: Optional[str] = None, headers: Optional[dict] = None) -> LoggedHTTPClient:
        return provider_client(
            self.name,
            (base_url or self.base_url).rstrip("/"),
            local=self.local,
            transport=self._transport,
            headers=headers,
        )

    async def send(self, client: LoggedHTTPClient, method: str, url: str, **kwargs) -> httpx.Response:
        """Perform one request; map transport failures and non-2xx replies to the error taxonomy."""
        try:
            resp = await client.request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ProviderConnectionError(self.display_name, type(exc).__name__, local=self.local) from exc
        except httpx.HTTPError as exc:
            raise ProviderConnectionError(self.display_name, str(exc) or type(exc).__name__, local=self.local) from exc

        if resp.status_code in (401, 403):
            raise AuthError(f"{self.display_name} rejected the API key (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise UpstreamError(self.display_name, resp.status_code, resp.text[:UPSTREAM_BODY_MAXLEN])
        return resp

    def json_body(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(self.display_name, resp.status_code, "response is not JSON") from exc

    async def chat(self, model: str, messages: List[Dict[str, str]], credential=None, options=None) -> ChatResult:
        raise ValidationError(f"{self.display_name} does not support chat")

    def validate_image_request(self, request) -> None:
        """Backend-specific checks run before a job record exists."""

    async def submit_image(self, request, credential=None) -> ImageSubmission:
        raise ValidationError(f"{self.display_name} does not support image generation")

    async def check_image(self, token: str) -> ImageStatus:
        raise ValidationError(f"{self.display_name} has no asynchronous image jobs")

    async def fetch_artifact(self, ref: Dict[str, str]) -> Artifact:
        raise ValidationError(f"{self.display_name} has no remote artifacts")

    async def test_connection(self, credential=None) -> None:
        raise NotImplementedError
