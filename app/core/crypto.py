"""ADSYNC — Platform token encryption.

Ad account tokens are stored Fernet-encrypted; the sync core only ever
receives the decrypted value.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings


class TokenDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted or is empty."""


class TokenKeyError(TokenDecryptionError):
    """The encryption key is missing or malformed."""


def _fernet(key: str | None = None) -> Fernet:
    key = key or settings.token_encryption_key
    if not key:
        raise TokenKeyError("TOKEN_ENCRYPTION_KEY not configured")
    try:
        return Fernet(key.encode())
    except ValueError as e:
        raise TokenKeyError("TOKEN_ENCRYPTION_KEY is not a valid Fernet key") from e


def encrypt_token(token: str, key: str | None = None) -> str:
    return _fernet(key).encrypt(token.encode()).decode()


def decrypt_token(encrypted: str | None, key: str | None = None) -> str:
    """Decrypt a stored token, rejecting blank results."""
    if not encrypted:
        raise TokenDecryptionError("No stored token")
    try:
        token = _fernet(key).decrypt(encrypted.encode()).decode()
    except InvalidToken as e:
        raise TokenDecryptionError("Stored token could not be decrypted") from e
    if not token.strip():
        raise TokenDecryptionError("Stored token is empty")
    return token
