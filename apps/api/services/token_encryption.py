"""
Token Encryption Service

GitHub personal access / OAuth tokens are stored Fernet-encrypted in
``User.github_token`` and only decrypted when a GitHubClient is built.

The key comes from TOKEN_ENCRYPTION_KEY. Outside production a throwaway
key is generated so local runs work, which means tokens stored during that
process cannot be read by the next one.
"""

from cryptography.fernet import Fernet, InvalidToken
from typing import Optional
import logging
from core.config import settings

logger = logging.getLogger(__name__)


class TokenEncryption:
    """Fernet wrapper for GitHub tokens."""

    def __init__(self, key: Optional[str] = None):
        encryption_key = key or settings.TOKEN_ENCRYPTION_KEY

        if not encryption_key:
            if settings.ENVIRONMENT == "production":
                raise RuntimeError(
                    "TOKEN_ENCRYPTION_KEY must be set in production. "
                    "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            logger.warning("TOKEN_ENCRYPTION_KEY not set. Generating temporary key (NOT FOR PRODUCTION)")
            encryption_key = Fernet.generate_key().decode()

        if isinstance(encryption_key, str):
            encryption_key = encryption_key.encode()

        try:
            self.cipher = Fernet(encryption_key)
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to initialize Fernet cipher: {e}")
            raise ValueError(f"Invalid encryption key format: {e}")

    def encrypt(self, plaintext: str) -> Optional[str]:
        if not plaintext:
            return None
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """
        Decrypt a stored token.

        Returns None (and logs) when the value was encrypted with another key
        or is corrupt; callers treat that as "not connected".
        """
        if not ciphertext:
            return None
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("GitHub token decryption failed (wrong key or corrupt value)")
            return None


_token_encryption: Optional[TokenEncryption] = None


def get_token_encryption() -> TokenEncryption:
    """Get or create global token encryption instance."""
    global _token_encryption
    if _token_encryption is None:
        _token_encryption = TokenEncryption()
    return _token_encryption


def encrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return get_token_encryption().encrypt(token)


def decrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return get_token_encryption().decrypt(token)
