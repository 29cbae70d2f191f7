"""Tests for keypair generation and private key encryption."""
import base64

import pytest

from meshplane.core.exceptions import KeypairGenerationFailure
from meshplane.core.keys import ENCRYPTED_PREFIX, KeyPairGenerator, KeyVault


def test_generate_produces_wireguard_sized_keys(keygen):
    pair = keygen.generate()

    assert len(base64.b64decode(pair.public_key)) == 32
    assert pair.private_key_encrypted.startswith(ENCRYPTED_PREFIX)


def test_public_key_matches_encrypted_private_key(keygen):
    pair = keygen.generate()
    private_key = keygen.decrypt_private_key(pair.private_key_encrypted)

    assert KeyPairGenerator.derive_public_key(private_key) == pair.public_key


def test_each_generation_is_unique(keygen):
    first, second = keygen.generate(), keygen.generate()
    assert first.public_key != second.public_key


def test_encryption_uses_fresh_nonce(vault):
    assert vault.encrypt("secret") != vault.encrypt("secret")
    assert vault.decrypt(vault.encrypt("secret")) == "secret"


def test_decrypt_with_wrong_secret_fails(vault):
    other = KeyVault(secret="another-secret", salt="test-salt")
    with pytest.raises(KeypairGenerationFailure):
        other.decrypt(vault.encrypt("secret"))


def test_decrypt_rejects_tampered_or_plain_values(vault):
    token = vault.encrypt("secret")
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

    with pytest.raises(KeypairGenerationFailure):
        vault.decrypt(tampered)
    with pytest.raises(KeypairGenerationFailure):
        vault.decrypt("not-encrypted")


def test_is_encrypted(vault):
    assert KeyVault.is_encrypted(vault.encrypt("x")) is True
    assert KeyVault.is_encrypted("plain") is False
    assert KeyVault.is_encrypted(None) is False


def test_generation_failure_is_wrapped(vault, monkeypatch):
    generator = KeyPairGenerator(vault=vault)

    def broken(_plaintext):
        raise RuntimeError("entropy source unavailable")

    monkeypatch.setattr(vault, "encrypt", broken)

    with pytest.raises(KeypairGenerationFailure, match="entropy source unavailable"):
        generator.generate()


def test_derive_public_key_rejects_garbage():
    with pytest.raises(KeypairGenerationFailure):
        KeyPairGenerator.derive_public_key("c2hvcnQ=")
