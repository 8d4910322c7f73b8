"""Encryption of OAuth tokens at rest.

Tokens are encrypted with AES-256-CBC. The key is the SHA-256 digest of the
site secret and the IV is the first 16 bytes of the SHA-256 digest of the
site salt, so rotating either secret makes every stored token unreadable and
forces users to reconnect.
"""

import base64
import binascii
import hashlib
import logging
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric cipher for provider access and refresh tokens."""

    def __init__(self, secret_key: str, secret_salt: str):
        if not secret_key:
            raise ValueError("A secret key is required for token encryption")
        self._key = hashlib.sha256(secret_key.encode()).digest()
        self._iv = hashlib.sha256(secret_salt.encode()).digest()[:16]

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(self._iv))

    def encrypt(self, token: str) -> str:
        """Encrypt a token for storage.

        Args:
            token: Plaintext token

        Returns:
            Base64 encoded ciphertext
        """
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(token.encode()) + padder.finalize()
        encryptor = self._cipher().encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(ciphertext).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt a stored token.

        Args:
            ciphertext: Base64 ciphertext as produced by ``encrypt``

        Returns:
            The plaintext token, or None if the value is empty or cannot be
            decrypted with the current secrets
        """
        if not ciphertext:
            return None
        try:
            raw = base64.b64decode(ciphertext, validate=True)
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(raw) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode()
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Stored token could not be decrypted: {e}")
            return None
