import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.domain.exceptions import ConfigError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
SALT_LENGTH = 64
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


class CredentialCipher:
    """
    Encrypts GitHub tokens before they are persisted.

    Tokens are sealed with AES-256-GCM under a key derived from the configured secret
    with PBKDF2-SHA256 and a fresh random salt. The stored form is
    ``base64(salt):base64(iv):base64(tag):hex(ciphertext)``.
    """

    def __init__(self, secret: Optional[str], iterations: int = PBKDF2_ITERATIONS):
        self._secret = secret
        self._iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        if not self._secret:
            raise ConfigError("Encryption key not configured (set ENCRYPTION_KEY or GITHUB_WEBHOOK_SECRET).")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret.encode("utf-8"))

    def encrypt(self, token: str) -> str:
        if not token:
            raise ConfigError("Refusing to encrypt an empty token.")
        if self.is_encrypted(token):
            return token

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, token.encode("utf-8"), None)
        ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

        return ":".join([
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(auth_tag).decode("ascii"),
            ciphertext.hex(),
        ])

    def decrypt(self, data: str) -> str:
        """
        Returns the plaintext token.

        Values that are not in the encrypted format are legacy plaintext rows and are
        returned unchanged.
        """
        if not self.is_encrypted(data):
            return data

        salt_b64, iv_b64, tag_b64, ciphertext_hex = data.split(":")
        salt = base64.b64decode(salt_b64)
        iv = base64.b64decode(iv_b64)
        auth_tag = base64.b64decode(tag_b64)
        ciphertext = bytes.fromhex(ciphertext_hex)

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag:
            logger.error("Stored credential failed authentication; was ENCRYPTION_KEY rotated?")
            raise ConfigError("Stored credential could not be decrypted.") from None
        return plaintext.decode("utf-8")

    @staticmethod
    def is_encrypted(data: str) -> bool:
        if not isinstance(data, str):
            return False

        components = data.split(":")
        if len(components) != 4 or not all(components):
            return False

        salt_b64, iv_b64, tag_b64, ciphertext_hex = components
        try:
            salt = base64.b64decode(salt_b64, validate=True)
            iv = base64.b64decode(iv_b64, validate=True)
            auth_tag = base64.b64decode(tag_b64, validate=True)
            bytes.fromhex(ciphertext_hex)
        except (binascii.Error, ValueError):
            return False

        return len(salt) == SALT_LENGTH and len(iv) == IV_LENGTH and len(auth_tag) == AUTH_TAG_LENGTH
