# meshplane/core/keys.py
"""
WireGuard Key Generation and Private Key Encryption

Keys are Curve25519 (X25519) pairs, base64 encoded the way `wg genkey`
prints them. Private keys are encrypted with AES-256-GCM before they are
handed to anything outside this module.
"""

import os
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from meshplane.config import settings
from .exceptions import KeypairGenerationFailure

logger = logging.getLogger(__name__)

# Marker prefix for encrypted values
ENCRYPTED_PREFIX = "enc:v1:"

NONCE_SIZE = 12


@dataclass
class KeyPair:
    """Public key plus the encrypted private key"""
    public_key: str
    private_key_encrypted: str


class KeyVault:
    """
    Encrypt private keys with AES-256-GCM authenticated encryption.

    The 32-byte key is derived from a secret with Scrypt (n=2^14, r=8, p=1).

    Each encrypted value carries:
    - 12-byte nonce (unique per encryption)
    - Ciphertext
    - 16-byte authentication tag
    """

    def __init__(self, secret: Optional[str] = None, salt: Optional[str] = None):
        secret = secret or settings.KEY_ENCRYPTION_SECRET
        salt = salt or settings.KEY_ENCRYPTION_SALT

        kdf = Scrypt(salt=salt.encode("utf-8"), length=32, n=2**14, r=8, p=1)
        self._cipher = AESGCM(kdf.derive(secret.encode("utf-8")))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext

        Format: enc:v1:<base64(nonce + ciphertext + tag)>
        """
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{ENCRYPTED_PREFIX}{base64.b64encode(nonce + ciphertext).decode('ascii')}"

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a value produced by encrypt()

        Raises:
            KeypairGenerationFailure: If the value is not ours or was tampered with
        """
        if not encrypted or not encrypted.startswith(ENCRYPTED_PREFIX):
            raise KeypairGenerationFailure("Value is not an encrypted private key")

        try:
            data = base64.b64decode(encrypted[len(ENCRYPTED_PREFIX):], validate=True)
            plaintext = self._cipher.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
        except (binascii.Error, InvalidTag, ValueError) as e:
            raise KeypairGenerationFailure(
                "Private key decryption failed (wrong secret or corrupted data)"
            ) from e

        return plaintext.decode("utf-8")

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return bool(value) and value.startswith(ENCRYPTED_PREFIX)


class KeyPairGenerator:
    """
    Mints WireGuard keypairs

    The raw private key never leaves generate(); callers get it encrypted.
    """

    def __init__(self, vault: Optional[KeyVault] = None):
        self.vault = vault or KeyVault()

    def generate(self) -> KeyPair:
        """
        Generate a new keypair

        Returns:
            KeyPair with base64 public key and encrypted private key

        Raises:
            KeypairGenerationFailure: If key generation or encryption fails
        """
        try:
            private_key = X25519PrivateKey.generate()
            private_b64 = base64.b64encode(
                private_key.private_bytes(
                    encoding=serialization.Encoding.Raw,
                    format=serialization.PrivateFormat.Raw,
                    encryption_algorithm=serialization.NoEncryption(),
                )
            ).decode("ascii")
            public_b64 = base64.b64encode(
                private_key.public_key().public_bytes(
                    encoding=serialization.Encoding.Raw,
                    format=serialization.PublicFormat.Raw,
                )
            ).decode("ascii")
            encrypted = self.vault.encrypt(private_b64)
        except Exception as e:
            logger.error(f"Keypair generation failed: {e}")
            raise KeypairGenerationFailure(f"Keypair generation failed: {e}") from e

        logger.debug(f"Generated keypair {public_b64[:20]}...")
        return KeyPair(public_key=public_b64, private_key_encrypted=encrypted)

    @staticmethod
    def derive_public_key(private_key_b64: str) -> str:
        """
        Recompute the public key for a base64 private key

        Raises:
            KeypairGenerationFailure: If the private key is not 32 bytes of base64
        """
        try:
            raw = base64.b64decode(private_key_b64, validate=True)
            private_key = X25519PrivateKey.from_private_bytes(raw)
        except (binascii.Error, ValueError) as e:
            raise KeypairGenerationFailure(f"Invalid private key: {e}") from e

        return base64.b64encode(
            private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        ).decode("ascii")

    def decrypt_private_key(self, private_key_encrypted: str) -> str:
        return self.vault.decrypt(private_key_encrypted)


key_generator = KeyPairGenerator()
