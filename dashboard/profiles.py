"""
Named provider profiles.

A profile bundles a provider with an optional key, endpoint, default model
and prompt template. Keys go through the same vault as provider settings
and are only ever returned masked.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from dashboard.db import session_scope
from dashboard.errors import CredentialDecryptError, NotFoundError, ValidationError
from dashboard.logging_utils import get_logger
from dashboard.models import JOB_KINDS, Profile, _iso, utcnow
from dashboard.vault import MASK_PLACEHOLDER, CredentialVault, mask_secret

PROFILE_PROVIDERS = ("ollama", "comfyui", "openai", "gemini", "claude")

_EDITABLE = ("name", "description", "kind", "provider", "model", "options", "prompt_template", "url")


class ProfileStore:
    def __init__(self, session_factory: sessionmaker, vault: CredentialVault):
        self._sessions = session_factory
        self._vault = vault
        self.log = get_logger()

    def _masked(self, row: Profile) -> Dict[str, Any]:
        masked = None
        if row.api_key:
            try:
                masked = mask_secret(self._vault.decrypt(row.api_key))
            except CredentialDecryptError as exc:
                self.log.error("profile_decrypt_failed", profile_id=row.id, error=str(exc))
                masked = MASK_PLACEHOLDER
        return {
            "id": row.id,
            "name": row.name,
            "description": row.description,
            "type": row.kind,
            "provider": row.provider,
            "model": row.model,
            "options": row.options or {},
            "prompt_template": row.prompt_template,
            "url": row.url,
            "has_api_key": row.api_key is not None,
            "api_key_masked": masked,
            "created_at": _iso(row.created_at),
            "updated_at": _iso(row.updated_at),
        }

    def _get(self, s, profile_id: str) -> Profile:
        row = s.get(Profile, profile_id)
        if row is None:
            raise NotFoundError(f"Profile {profile_id} not found")
        return row

    @staticmethod
    def _check(fields: Dict[str, Any]) -> None:
        if "provider" in fields and fields["provider"] not in PROFILE_PROVIDERS:
            raise ValidationError(f"Invalid provider. Must be one of: {', '.join(PROFILE_PROVIDERS)}")
        if "kind" in fields and fields["kind"] not in JOB_KINDS:
            raise ValidationError(f"type must be one of: {', '.join(JOB_KINDS)}")
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValidationError("name must not be empty")

    def list(self, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        with session_scope(self._sessions) as s:
            q = s.query(Profile)
            if provider:
                q = q.filter(Profile.provider == provider)
            return [self._masked(r) for r in q.order_by(Profile.name).all()]

    def get(self, profile_id: str) -> Dict[str, Any]:
        with session_scope(self._sessions) as s:
            return self._masked(self._get(s, profile_id))

    def create(self, name: str, kind: str, provider: str, api_key: Optional[str] = None, **fields) -> Dict[str, Any]:
        fields = dict(fields, name=name, kind=kind, provider=provider)
        self._check(fields)
        with session_scope(self._sessions) as s:
            row = Profile(**{k: v for k, v in fields.items() if k in _EDITABLE})
            row.api_key = self._vault.encrypt(api_key) if api_key else None
            s.add(row)
            s.flush()
            self.log.info("profile_created", profile_id=row.id, provider=provider)
            return self._masked(row)

    def update(self, profile_id: str, api_key: Optional[str] = None, **fields) -> Dict[str, Any]:
        """Apply the given fields; an empty-string ``api_key`` clears the stored key."""
        self._check(fields)
        with session_scope(self._sessions) as s:
            row = self._get(s, profile_id)
            for key, value in fields.items():
                if key in _EDITABLE:
                    setattr(row, key, value)
            if api_key is not None:
                row.api_key = self._vault.encrypt(api_key) if api_key else None
            row.updated_at = utcnow()
            s.flush()
            self.log.info("profile_updated", profile_id=profile_id)
            return self._masked(row)

    def delete(self, profile_id: str) -> None:
        with session_scope(self._sessions) as s:
            deleted = s.query(Profile).filter(Profile.id == profile_id).delete()
        if not deleted:
            raise NotFoundError(f"Profile {profile_id} not found")
        self.log.info("profile_deleted", profile_id=profile_id)
