"""
OpenAI backend over the REST API.

Chat uses /chat/completions. Image generation uses /images/generations
with b64_json output, so it completes within the submitting request.
"""
from __future__ import annotations

import base64
import binascii
from typing import Any, Dict

from backends.base import Artifact, ChatResult, ImageSubmission, ProviderBackend
from dashboard.errors import UpstreamError, ValidationError

OPENAI_API = "https://api.openai.com/v1"
DALLE_SIZES = ("256x256", "512x512", "1024x1024", "1792x1024", "1024x1792")


class OpenAIBackend(ProviderBackend):
    name = "openai"
    display_name = "OpenAI"
    default_model = "gpt-4o-mini"
    default_image_model = "dall-e-3"
    supports_image = True

    def __init__(self, base_url: str = OPENAI_API, transport=None):
        super().__init__(base_url, transport)

    def _client_for(self, credential):
        return self.client(
            base_url=credential.endpoint_url,
            headers={"Authorization": f"Bearer {credential.api_key}"},
        )

    async def chat(self, model, messages, credential=None, options=None) -> ChatResult:
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        for key in ("temperature", "max_tokens", "top_p", "stop"):
            if (options or {}).get(key) is not None:
                payload[key] = options[key]

        async with self._client_for(credential) as client:
            data = self.json_body(await self.send(client, "POST", "/chat/completions", json=payload))

        choices = data.get("choices") or []
        if not choices:
            raise UpstreamError(self.display_name, 200, "response has no choices")
        usage = data.get("usage") or {}
        return ChatResult(
            content=(choices[0].get("message") or {}).get("content") or "",
            finish_reason=choices[0].get("finish_reason") or "unknown",
            tokens_used=usage.get("total_tokens"),
            model=data.get("model", model),
        )

    def validate_image_request(self, request) -> None:
        size = f"{request.parameters.width}x{request.parameters.height}"
        if size not in DALLE_SIZES:
            raise ValidationError(f"OpenAI image size must be one of: {', '.join(DALLE_SIZES)}")

    async def submit_image(self, request, credential=None) -> ImageSubmission:
        self.validate_image_request(request)
        params = request.parameters
        size = f"{params.width}x{params.height}"
        model = request.model or self.default_image_model
        payload = {
            "model": model,
            "prompt": request.prompt,
            "n": params.batch_size,
            "size": size,
            "response_format": "b64_json",
        }

        async with self._client_for(credential) as client:
            data = self.json_body(await self.send(client, "POST", "/images/generations", json=payload))

        artifacts = []
        for i, item in enumerate(data.get("data") or []):
            try:
                raw = base64.b64decode(item.get("b64_json") or "", validate=True)
            except (binascii.Error, ValueError) as exc:
                raise UpstreamError(self.display_name, 200, "image payload is not base64") from exc
            artifacts.append(Artifact(filename=f"openai_{i:05d}.png", data=raw, content_type="image/png"))
        if not artifacts:
            raise UpstreamError(self.display_name, 200, "response contains no images")
        return ImageSubmission(artifacts=artifacts, resolved={"model": model, "size": size, "n": params.batch_size})

    async def test_connection(self, credential=None) -> None:
        async with self._client_for(credential) as client:
            await self.send(client, "GET", "/models")
