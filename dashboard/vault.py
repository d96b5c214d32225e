"""
Credential vault: AES-256-GCM encryption of provider API keys at rest.

Stored blobs are one hex string: nonce (16 bytes) | tag (16 bytes) |
ciphertext. The cipher key is SHA-256 of the configured passphrase.
"""
from __future__ import annotations

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dashboard.errors import CredentialDecryptError

NONCE_BYTES = 16
TAG_BYTES = 16
MASK_PLACEHOLDER = "****"


class CredentialVault:
    def __init__(self, passphrase: str):
        if not passphrase:
            raise ValueError("Vault passphrase must not be empty")
        self._aead = AESGCM(hashlib.sha256(passphrase.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return nonce.hex() + tag.hex() + ciphertext.hex()

    def decrypt(self, blob: str) -> str:
        """Return the plaintext, or raise CredentialDecryptError; never returns partial data."""
        header_len = (NONCE_BYTES + TAG_BYTES) * 2
        if not isinstance(blob, str) or len(blob) < header_len:
            raise CredentialDecryptError("ciphertext is truncated")
        try:
            nonce = bytes.fromhex(blob[: NONCE_BYTES * 2])
            tag = bytes.fromhex(blob[NONCE_BYTES * 2 : header_len])
            ciphertext = bytes.fromhex(blob[header_len:])
        except ValueError as exc:
            raise CredentialDecryptError("ciphertext is not valid hex") from exc
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialDecryptError("authentication tag mismatch") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialDecryptError("plaintext is not valid UTF-8") from exc


def mask_secret(secret: str) -> str:
    """Display form of a secret: only the last four characters stay visible."""
    if len(secret) <= 4:
        return MASK_PLACEHOLDER
    return "*" * (len(secret) - 4) + secret[-4:]
