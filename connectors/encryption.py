"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key is loaded from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).

Without a key, encryption is **disabled** and tokens are stored as
plaintext (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric cipher for stored access / refresh tokens."""

    def __init__(self, key: Optional[str | bytes] = None) -> None:
        self._fernet: Optional[Fernet] = None
        if not key:
            return
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as exc:
            logger.error("Invalid TOKEN_ENCRYPTION_KEY, tokens stay plaintext: %s", exc)

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None or self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Rows written before encryption was enabled are not valid Fernet
        tokens and come back unchanged.
        """
        if ciphertext is None or self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext


_default_cipher: Optional[TokenCipher] = None


def default_cipher() -> TokenCipher:
    """Lazily build the process-wide cipher from settings."""
    global _default_cipher
    if _default_cipher is None:
        _default_cipher = TokenCipher(config.token_encryption_key)
        if _default_cipher.enabled:
            logger.info("Token encryption enabled (Fernet/AES-128-CBC)")
        else:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — OAuth tokens will be stored as plaintext"
            )
    return _default_cipher
