"""
Provider credential persistence on top of the vault.

Plaintext keys exist only between ``resolve()`` and the outbound request
that needs them; every other view is masked.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from dashboard.db import session_scope
from dashboard.errors import CredentialDecryptError, NotConfiguredError, NotFoundError, ValidationError
from dashboard.logging_utils import get_logger
from dashboard.models import Profile, ProviderCredential, _iso, utcnow
from dashboard.vault import MASK_PLACEHOLDER, CredentialVault, mask_secret

CLOUD_PROVIDERS = ("openai", "gemini", "claude")


@dataclass(frozen=True)
class ResolvedCredential:
    api_key: str
    endpoint_url: Optional[str] = None
    default_model: Optional[str] = None

    def __repr__(self) -> str:
        return f"ResolvedCredential(api_key={mask_secret(self.api_key)!r}, endpoint_url={self.endpoint_url!r})"


def _check_provider(provider: str) -> None:
    if provider not in CLOUD_PROVIDERS:
        raise ValidationError(f"Invalid provider. Must be one of: {', '.join(CLOUD_PROVIDERS)}")


class CredentialStore:
    def __init__(self, session_factory: sessionmaker, vault: CredentialVault):
        self._sessions = session_factory
        self._vault = vault
        self.log = get_logger()

    def _masked(self, row: ProviderCredential) -> Dict[str, Any]:
        corrupted = False
        try:
            masked = mask_secret(self._vault.decrypt(row.api_key))
        except CredentialDecryptError as exc:
            self.log.error("credential_decrypt_failed", provider=row.provider, error=str(exc))
            masked, corrupted = MASK_PLACEHOLDER, True
        return {
            "provider": row.provider,
            "api_key_masked": masked,
            "endpoint_url": row.endpoint_url,
            "default_model": row.default_model,
            "status": row.status,
            "error_message": row.error_message,
            "last_tested": _iso(row.last_tested),
            "corrupted": corrupted,
        }

    def list_masked(self) -> List[Dict[str, Any]]:
        with session_scope(self._sessions) as s:
            rows = s.query(ProviderCredential).order_by(ProviderCredential.provider).all()
            return [self._masked(r) for r in rows]

    def get_masked(self, provider: str) -> Dict[str, Any]:
        _check_provider(provider)
        with session_scope(self._sessions) as s:
            row = s.query(ProviderCredential).filter_by(provider=provider).one_or_none()
            if row is None:
                raise NotFoundError(f"Settings for {provider} not found")
            return self._masked(row)

    def upsert(
        self,
        provider: str,
        api_key: str,
        endpoint_url: Optional[str] = None,
        default_model: Optional[str] = None,
    ) -> Dict[str, Any]:
        _check_provider(provider)
        if not api_key:
            raise ValidationError("apiKey is required")

        blob = self._vault.encrypt(api_key)
        with session_scope(self._sessions) as s:
            row = s.query(ProviderCredential).filter_by(provider=provider).one_or_none()
            if row is None:
                row = ProviderCredential(provider=provider, api_key=blob)
                s.add(row)
            row.api_key = blob
            row.endpoint_url = endpoint_url or None
            row.default_model = default_model or None
            row.status = "unknown"
            row.error_message = None
            row.updated_at = utcnow()
            s.flush()
            self.log.info("credential_saved", provider=provider)
            return self._masked(row)

    def delete(self, provider: str) -> None:
        _check_provider(provider)
        with session_scope(self._sessions) as s:
            deleted = s.query(ProviderCredential).filter_by(provider=provider).delete()
        if not deleted:
            raise NotFoundError(f"Settings for {provider} not found")
        self.log.info("credential_deleted", provider=provider)

    def resolve(self, provider: str, profile_id: Optional[str] = None) -> ResolvedCredential:
        """
        Decrypt the key for an outbound call.

        An explicit profile wins. Otherwise the provider settings row is
        used, then the first profile (by name) of that provider holding a key.
        """
        with session_scope(self._sessions) as s:
            if profile_id:
                profile = s.get(Profile, profile_id)
                if profile is None:
                    raise NotFoundError(f"Profile {profile_id} not found")
                if profile.provider != provider:
                    raise ValidationError(f"Profile {profile_id} belongs to {profile.provider}, not {provider}")
                if not profile.api_key:
                    raise NotConfiguredError(f"Profile {profile_id} has no API key")
                source = (profile.api_key, profile.url, profile.model)
            else:
                row = s.query(ProviderCredential).filter_by(provider=provider).one_or_none()
                if row is not None:
                    source = (row.api_key, row.endpoint_url, row.default_model)
                else:
                    profile = (
                        s.query(Profile)
                        .filter(Profile.provider == provider, Profile.api_key.isnot(None))
                        .order_by(Profile.name)
                        .first()
                    )
                    if profile is None:
                        raise NotConfiguredError(f"{provider} not configured. Please add an API key in settings.")
                    source = (profile.api_key, profile.url, profile.model)
        blob, endpoint_url, default_model = source
        try:
            api_key = self._vault.decrypt(blob)
        except CredentialDecryptError as exc:
            self.log.error("credential_decrypt_failed", provider=provider, profile_id=profile_id, error=str(exc))
            raise NotConfiguredError(
                f"{provider} credential is corrupted or was saved with a different ENCRYPTION_KEY; re-enter it in settings."
            ) from exc
        return ResolvedCredential(api_key=api_key, endpoint_url=endpoint_url or None, default_model=default_model or None)

    def record_test(self, provider: str, ok: bool, message: Optional[str] = None) -> None:
        with session_scope(self._sessions) as s:
            row = s.query(ProviderCredential).filter_by(provider=provider).one_or_none()
            if row is None:
                return
            row.last_tested = utcnow()
            row.status = "connected" if ok else "error"
            row.error_message = None if ok else message
