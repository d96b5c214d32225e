"""
Ollama backend: local chat daemon plus model management.

Provides:
- chat via POST /api/chat (stream false)
- model listing (/api/tags), loaded models (/api/ps), model info (/api/show)
- load (/api/pull) and unload (/api/generate with keep_alive 0)
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from backends.base import ChatResult, ProviderBackend
from dashboard.errors import NotFoundError, UpstreamError
from shared.format_utils import format_bytes, infer_capabilities

OLLAMA_TIMEOUT = 5.0  # seconds for availability probe

OPTION_KEYS = {
    "temperature": "temperature",
    "max_tokens": "num_predict",
    "top_p": "top_p",
    "top_k": "top_k",
    "stop": "stop",
}


def _ollama_options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {OPTION_KEYS[k]: v for k, v in (options or {}).items() if k in OPTION_KEYS and v is not None}


class OllamaBackend(ProviderBackend):
    name = "ollama"
    display_name = "Ollama"
    local = True

    async def is_available(self) -> bool:
        """Return True if the Ollama HTTP API answers /api/tags quickly."""
        try:
            async with self.client() as client:
                r = await client.get("/api/tags", timeout=OLLAMA_TIMEOUT)
                return r.status_code == 200
        except httpx.HTTPError:
            return False

    async def chat(self, model, messages, credential=None, options=None) -> ChatResult:
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        ollama_opts = _ollama_options(options)
        if ollama_opts:
            payload["options"] = ollama_opts

        async with self.client() as client:
            resp = await self.send(client, "POST", "/api/chat", json=payload)
        data = self.json_body(resp)
        if data.get("error"):
            raise UpstreamError(self.display_name, resp.status_code, str(data["error"]))

        tokens = None
        if data.get("eval_count") is not None:
            tokens = int(data.get("prompt_eval_count") or 0) + int(data["eval_count"])
        return ChatResult(
            content=(data.get("message") or {}).get("content", ""),
            finish_reason=data.get("done_reason") or ("stop" if data.get("done") else "length"),
            tokens_used=tokens,
            model=data.get("model", model),
        )

    async def test_connection(self, credential=None) -> None:
        async with self.client() as client:
            await self.send(client, "GET", "/api/tags")

    async def list_models(self) -> List[Dict[str, Any]]:
        async with self.client() as client:
            tags = self.json_body(await self.send(client, "GET", "/api/tags"))
            running = self.json_body(await self.send(client, "GET", "/api/ps"))
        loaded = {m.get("name") for m in running.get("models") or []} | {
            m.get("model") for m in running.get("models") or []
        }

        models = []
        for m in tags.get("models") or []:
            details = m.get("details") or {}
            models.append({
                "name": m.get("name"),
                "size": format_bytes(m.get("size") or 0),
                "loaded": m.get("name") in loaded,
                "capabilities": infer_capabilities(m.get("name", "")),
                "description": details.get("family") or "Unknown",
                "parameters": details.get("parameter_size") or "Unknown",
            })
        return models

    async def model_info(self, name: str) -> Dict[str, Any]:
        async with self.client() as client:
            try:
                resp = await self.send(client, "POST", "/api/show", json={"name": name})
            except UpstreamError as exc:
                if exc.status == 404:
                    raise NotFoundError(f"Model {name} not found") from exc
                raise
        data = self.json_body(resp)
        return {
            "name": name,
            "size": format_bytes(data.get("size") or 0),
            "capabilities": infer_capabilities(name),
            "description": data.get("modelfile") or "",
            "parameters": data.get("parameters") or "",
            "template": data.get("template") or "",
            "details": data.get("details") or {},
        }

    async def load_model(self, name: str) -> Dict[str, Any]:
        async with self.client() as client:
            resp = await self.send(client, "POST", "/api/pull", json={"name": name, "stream": False})
        data = self.json_body(resp)
        return {"name": name, "status": data.get("status", "loading")}

    async def unload_model(self, name: str) -> Dict[str, Any]:
        async with self.client() as client:
            await self.send(client, "POST", "/api/generate", json={"model": name, "prompt": "", "keep_alive": 0})
        return {"name": name, "loaded": False}

    async def model_status(self, name: str) -> Dict[str, Any]:
        async with self.client() as client:
            data = self.json_body(await self.send(client, "GET", "/api/ps"))
        running = next(
            (m for m in data.get("models") or [] if m.get("name") == name or m.get("model") == name),
            None,
        )
        return {
            "name": name,
            "loaded": running is not None,
            "size_vram": format_bytes(running["size_vram"]) if running and running.get("size_vram") else None,
        }
