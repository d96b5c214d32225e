"""
Provider gateway: one entry point for every generation backend.

The backend for a provider name is looked up once per call in the
registry; cloud backends get their decrypted credential here, before any
outbound request, so a missing key never reaches the network.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from backends.base import Artifact, ChatResult, ImageStatus, ImageSubmission, ProviderBackend
from backends.claude_backend import ClaudeBackend
from backends.comfyui_backend import ComfyUIBackend
from backends.gemini_backend import GeminiBackend
from backends.ollama_backend import OllamaBackend
from backends.openai_backend import OpenAIBackend
from dashboard.credentials import CredentialStore, ResolvedCredential
from dashboard.errors import DashboardError, ValidationError
from dashboard.logging_utils import get_logger
from dashboard.profiles import ProfileStore


def build_backends(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, ProviderBackend]:
    backends: List[ProviderBackend] = [
        OllamaBackend(settings.ollama_url, transport=transport),
        ComfyUIBackend(settings.comfyui_url, transport=transport),
        OpenAIBackend(transport=transport),
        GeminiBackend(transport=transport),
        ClaudeBackend(transport=transport),
    ]
    return {b.name: b for b in backends}


class ProviderGateway:
    def __init__(
        self,
        backends: Dict[str, ProviderBackend],
        credentials: CredentialStore,
        profiles: Optional[ProfileStore] = None,
    ):
        self._backends = backends
        self._credentials = credentials
        self._profiles = profiles
        self.log = get_logger()

    @property
    def providers(self) -> List[str]:
        return list(self._backends)

    def backend(self, provider: str) -> ProviderBackend:
        try:
            return self._backends[provider]
        except KeyError:
            raise ValidationError(
                f"Unknown provider: {provider}. Must be one of: {', '.join(self._backends)}"
            ) from None

    @property
    def ollama(self) -> OllamaBackend:
        return self._backends["ollama"]

    @property
    def comfyui(self) -> ComfyUIBackend:
        return self._backends["comfyui"]

    def _credential(self, backend: ProviderBackend, profile_id: Optional[str] = None) -> Optional[ResolvedCredential]:
        if not backend.requires_credential:
            return None
        return self._credentials.resolve(backend.name, profile_id=profile_id)

    def _profile_model(self, profile_id: Optional[str]) -> Optional[str]:
        if not profile_id or self._profiles is None:
            return None
        return self._profiles.get(profile_id)["model"]

    def validate_chat(self, provider: str, model: str, profile_id: Optional[str] = None) -> ProviderBackend:
        """Reject chat requests that no backend could serve, without touching the network."""
        backend = self.backend(provider)
        if not backend.supports_chat:
            raise ValidationError(f"{backend.display_name} does not support chat")
        profile = None
        if profile_id and self._profiles is not None:
            profile = self._profiles.get(profile_id)
            if profile["provider"] != provider:
                raise ValidationError(f"Profile {profile_id} belongs to {profile['provider']}, not {provider}")
        if not model and backend.default_model is None and not (profile and profile["model"]):
            raise ValidationError(f"model is required for {backend.display_name}")
        return backend

    def validate_image(self, request) -> ProviderBackend:
        backend = self.backend(request.provider)
        if not backend.supports_image:
            raise ValidationError(f"{backend.display_name} does not support image generation")
        backend.validate_image_request(request)
        return backend

    async def chat(
        self,
        provider: str,
        model: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
        profile_id: Optional[str] = None,
    ) -> ChatResult:
        backend = self.validate_chat(provider, model, profile_id=profile_id)
        credential = self._credential(backend, profile_id)
        model = model or (credential.default_model if credential else None) or self._profile_model(profile_id)
        model = model or backend.default_model
        return await backend.chat(model, messages, credential, options)

    async def submit_image(self, request) -> ImageSubmission:
        backend = self.validate_image(request)
        credential = self._credential(backend)
        return await backend.submit_image(request, credential)

    async def check_image(self, provider: str, token: str) -> ImageStatus:
        return await self.backend(provider).check_image(token)

    async def fetch_artifact(self, provider: str, ref: Dict[str, str]) -> Artifact:
        return await self.backend(provider).fetch_artifact(ref)

    async def test_connection(self, provider: str, profile_id: Optional[str] = None) -> Dict[str, Any]:
        """Check a provider connection; cloud results are stamped onto the stored settings row."""
        backend = self.backend(provider)
        credential = self._credential(backend, profile_id)
        record = credential is not None and profile_id is None
        try:
            await backend.test_connection(credential)
        except DashboardError as exc:
            self.log.warning("provider_test_failed", provider=provider, error=exc.message)
            if record:
                self._credentials.record_test(provider, ok=False, message=exc.message)
            return {"provider": provider, "connected": False, "error": exc.message}
        if record:
            self._credentials.record_test(provider, ok=True)
        return {"provider": provider, "connected": True, "error": None}

    def sources(self) -> List[Dict[str, Any]]:
        """One entry per provider, then one per saved profile (id ``profile:<id>``)."""
        configured = {c["provider"]: not c["corrupted"] for c in self._credentials.list_masked()}
        profiles = self._profiles.list() if self._profiles is not None else []
        for p in profiles:
            if p["has_api_key"]:
                configured.setdefault(p["provider"], True)

        sources = []
        for name, backend in self._backends.items():
            caps = [c for c, ok in (("chat", backend.supports_chat), ("image", backend.supports_image)) if ok]
            sources.append({
                "id": name,
                "name": backend.display_name,
                "provider": name,
                "type": "local" if backend.local else "remote",
                "configured": True if backend.local else configured.get(name, False),
                "capabilities": caps,
            })
        for p in profiles:
            backend = self._backends.get(p["provider"])
            if backend is None:
                continue
            sources.append({
                "id": f"profile:{p['id']}",
                "name": p["name"],
                "provider": p["provider"],
                "type": "local" if backend.local else "remote",
                "configured": backend.local or p["has_api_key"],
                "capabilities": [p["type"]],
                "profile_id": p["id"],
                "model": p["model"],
            })
        return sources
