"""Symmetric encryption for provider tokens.

WHAT:
    `TokenCipher` wraps Fernet for encrypting Meta / Google access and
    refresh tokens before they are persisted.

WHY:
    Prevents raw tokens from landing in the database or logs. The key comes
    from validated settings and is handed to the cipher at startup.

REFERENCES:
    - adpulse/services/token_service.py (store / decrypt tokens)
    - adpulse/deps.py (Settings.TOKEN_ENCRYPTION_KEY validation)
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """Fernet-based encrypt/decrypt for provider secrets."""

    def __init__(self, key: str) -> None:
        if not key:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
                "or add it to backend/.env."
            )
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
                "Generate with: python generate_keys.py"
            ) from exc

    def encrypt_secret(self, plaintext: str, *, context: str) -> str:
        """Encrypt a provider secret before persisting.

        Args:
            plaintext: Raw secret to encrypt (e.g., Meta access token).
            context:   Friendly label for logs (provider/account).

        Returns:
            URL-safe base64 ciphertext suitable for DB storage.
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")

        ciphertext = self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return ciphertext

    def decrypt_secret(self, ciphertext: str, *, context: str) -> str:
        """Decrypt a stored provider secret.

        Raises:
            ValueError: If the stored value cannot be decrypted.
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty secret.")

        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
            raise ValueError("Unable to decrypt stored token.") from exc

        logger.info("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
