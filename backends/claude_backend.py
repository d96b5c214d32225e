from __future__ import annotations

from typing import Any, Dict

from backends.base import ChatResult, ProviderBackend

ANTHROPIC_API = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class ClaudeBackend(ProviderBackend):
    name = "claude"
    display_name = "Claude"
    default_model = "claude-3-5-sonnet-latest"

    def __init__(self, base_url: str = ANTHROPIC_API, transport=None):
        super().__init__(base_url, transport)

    def _client_for(self, credential):
        return self.client(
            base_url=credential.endpoint_url,
            headers={"x-api-key": credential.api_key, "anthropic-version": ANTHROPIC_VERSION},
        )

    async def chat(self, model, messages, credential=None, options=None) -> ChatResult:
        options = options or {}
        system_text = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": options.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"],
        }
        if system_text:
            payload["system"] = system_text
        for key, api_key in (("temperature", "temperature"), ("top_p", "top_p"), ("top_k", "top_k"), ("stop", "stop_sequences")):
            if options.get(key) is not None:
                payload[api_key] = options[key]

        async with self._client_for(credential) as client:
            data = self.json_body(await self.send(client, "POST", "/messages", json=payload))

        text = "".join(block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text")
        usage = data.get("usage") or {}
        tokens = None
        if usage:
            tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        return ChatResult(
            content=text,
            finish_reason=data.get("stop_reason") or "unknown",
            tokens_used=tokens,
            model=data.get("model", model),
        )

    async def test_connection(self, credential=None) -> None:
        async with self._client_for(credential) as client:
            await self.send(client, "GET", "/models")
