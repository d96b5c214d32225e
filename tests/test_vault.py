"""Tests for the AES-GCM credential vault and secret masking."""
import pytest

from dashboard.errors import CredentialDecryptError
from dashboard.vault import CredentialVault, mask_secret


@pytest.fixture
def vault():
    return CredentialVault("unit-test-passphrase")


@pytest.mark.parametrize(
    "plaintext",
    [
        "",
        "sk-12345678",
        "x" * 200,
        "key with spaces & symbols !@#$%^&*()_+{}|:<>?",
        "unicode-ключ-密钥",
    ],
)
def test_round_trip(vault, plaintext):
    assert vault.decrypt(vault.encrypt(plaintext)) == plaintext


def test_blob_layout_is_hex_nonce_tag_ciphertext(vault):
    blob = vault.encrypt("abcdef")
    # 16-byte nonce + 16-byte tag + 6-byte ciphertext, hex encoded
    assert len(blob) == (16 + 16 + 6) * 2
    int(blob, 16)


def test_fresh_nonce_per_call(vault):
    a = vault.encrypt("same secret")
    b = vault.encrypt("same secret")
    assert a != b
    assert a[:32] != b[:32]


def test_tampered_ciphertext_fails_closed(vault):
    blob = vault.encrypt("sk-live-secret")
    flipped = blob[:-1] + ("0" if blob[-1] != "0" else "1")
    with pytest.raises(CredentialDecryptError):
        vault.decrypt(flipped)


def test_tampered_tag_fails_closed(vault):
    blob = vault.encrypt("sk-live-secret")
    tag_start = 32
    flipped = blob[:tag_start] + ("f" if blob[tag_start] != "f" else "e") + blob[tag_start + 1:]
    with pytest.raises(CredentialDecryptError):
        vault.decrypt(flipped)


def test_wrong_passphrase_fails_closed(vault):
    blob = vault.encrypt("sk-live-secret")
    with pytest.raises(CredentialDecryptError):
        CredentialVault("another-passphrase").decrypt(blob)


@pytest.mark.parametrize("blob", ["", "abc", "zz" * 40])
def test_malformed_blob_fails_closed(vault, blob):
    with pytest.raises(CredentialDecryptError):
        vault.decrypt(blob)


def test_empty_passphrase_rejected():
    with pytest.raises(ValueError):
        CredentialVault("")


def test_mask_reveals_last_four():
    masked = mask_secret("sk-12345678")
    assert masked == "*" * 7 + "5678"
    assert masked.endswith("5678")
    assert "sk-1234" not in masked


@pytest.mark.parametrize("secret", ["", "a", "abcd"])
def test_mask_short_secret_reveals_nothing(secret):
    assert mask_secret(secret) == "****"
