"""Encryption of OAuth tokens at rest.

Tokens are encrypted with AES-256-CBC under a key derived from
``SESSION_SECRET`` with scrypt. When a user id is given the salt is
``user:<id>``, so each user's tokens are under a separate key. The stored form is
``<iv hex>:<ciphertext hex>``.
"""

from __future__ import annotations

import os
from datetime import datetime

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ...config import Settings
from ...errors import ConfigurationError, TokenDecryptionError
from .oauth import TokenRefreshCallback

KEY_BYTES = 32
IV_BYTES = 16
SHARED_SALT = "salt"

# scrypt cost parameters
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


class TokenCipher:
    """Encrypts and decrypts provider tokens with the session secret."""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("SESSION_SECRET is required for token encryption")
        self._secret = secret.encode()
        self._keys: dict[str, bytes] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCipher:
        return cls(settings.session_secret.get_secret_value())

    def _key(self, user_id: str | None) -> bytes:
        salt = f"user:{user_id}" if user_id else SHARED_SALT
        if salt not in self._keys:
            kdf = Scrypt(salt=salt.encode(), length=KEY_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
            self._keys[salt] = kdf.derive(self._secret)
        return self._keys[salt]

    def encrypt(self, token: str, user_id: str | None = None) -> str:
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(token.encode()) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key(user_id)), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str, user_id: str | None = None) -> str:
        """Recover a token stored by ``encrypt``.

        Raises:
            TokenDecryptionError: If the value is malformed or was encrypted
                under a different secret or user.
        """
        iv_hex, sep, ciphertext_hex = encrypted.partition(":")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            if not sep or len(iv) != IV_BYTES or not ciphertext:
                raise ValueError("expected <iv hex>:<ciphertext hex>")
            decryptor = Cipher(algorithms.AES(self._key(user_id)), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return (unpadder.update(padded) + unpadder.finalize()).decode()
        except ValueError as exc:
            raise TokenDecryptionError(f"Cannot decrypt stored token: {exc}") from exc


def encrypting_refresh_callback(
    cipher: TokenCipher, user_id: str, persist: TokenRefreshCallback
) -> TokenRefreshCallback:
    """Wrap ``persist`` so refreshed tokens reach it already encrypted."""

    async def on_token_refresh(
        access_token: str, refresh_token: str | None, expires_at: datetime
    ) -> None:
        await persist(
            cipher.encrypt(access_token, user_id),
            cipher.encrypt(refresh_token, user_id) if refresh_token else None,
            expires_at,
        )

    return on_token_refresh
