from __future__ import annotations

from typing import Any, Dict, List, Tuple

from backends.base import ChatResult, ProviderBackend
from dashboard.errors import UpstreamError

GEMINI_API = "https://generativelanguage.googleapis.com/v1beta"


def to_gemini_contents(messages: List[Dict[str, str]]) -> Tuple[List[Dict[str, Any]], str]:
    """Split chat turns into Gemini `contents` and a system instruction text."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    contents = [
        {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
        for m in messages
        if m["role"] != "system"
    ]
    return contents, "\n\n".join(system_parts)


class GeminiBackend(ProviderBackend):
    name = "gemini"
    display_name = "Gemini"
    default_model = "gemini-1.5-flash"

    def __init__(self, base_url: str = GEMINI_API, transport=None):
        super().__init__(base_url, transport)

    def _client_for(self, credential):
        return self.client(base_url=credential.endpoint_url, headers={"x-goog-api-key": credential.api_key})

    async def chat(self, model, messages, credential=None, options=None) -> ChatResult:
        contents, system_text = to_gemini_contents(messages)
        payload: Dict[str, Any] = {"contents": contents}
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        options = options or {}
        generation_config = {
            "temperature": options.get("temperature"),
            "maxOutputTokens": options.get("max_tokens"),
            "topP": options.get("top_p"),
            "topK": options.get("top_k"),
            "stopSequences": options.get("stop"),
        }
        generation_config = {k: v for k, v in generation_config.items() if v is not None}
        if generation_config:
            payload["generationConfig"] = generation_config

        async with self._client_for(credential) as client:
            data = self.json_body(
                await self.send(client, "POST", f"/models/{model}:generateContent", json=payload)
            )

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates returned")
            raise UpstreamError(self.display_name, 200, str(reason))
        parts = (candidates[0].get("content") or {}).get("parts") or []
        usage = data.get("usageMetadata") or {}
        return ChatResult(
            content="".join(p.get("text", "") for p in parts),
            finish_reason=candidates[0].get("finishReason") or "unknown",
            tokens_used=usage.get("totalTokenCount"),
            model=model,
        )

    async def test_connection(self, credential=None) -> None:
        async with self._client_for(credential) as client:
            await self.send(client, "GET", "/models")
