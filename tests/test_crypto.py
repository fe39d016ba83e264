"""Stored token encryption."""

import pytest
from cryptography.fernet import Fernet

from app.core.crypto import TokenDecryptionError, TokenKeyError, decrypt_token, encrypt_token


@pytest.fixture
def key():
    return Fernet.generate_key().decode()


def test_round_trip(key):
    stored = encrypt_token("EAAB-token", key)
    assert stored != "EAAB-token"
    assert decrypt_token(stored, key) == "EAAB-token"


def test_missing_token_is_rejected(key):
    with pytest.raises(TokenDecryptionError):
        decrypt_token(None, key)


def test_wrong_key_is_rejected(key):
    stored = encrypt_token("EAAB-token", key)
    with pytest.raises(TokenDecryptionError):
        decrypt_token(stored, Fernet.generate_key().decode())


def test_blank_token_is_rejected(key):
    with pytest.raises(TokenDecryptionError, match="empty"):
        decrypt_token(encrypt_token("   ", key), key)


def test_missing_key_is_a_configuration_error(key, monkeypatch):
    from app.config import settings

    stored = encrypt_token("EAAB-token", key)
    monkeypatch.setattr(settings, "token_encryption_key", None)
    with pytest.raises(TokenKeyError):
        encrypt_token("EAAB-token")
    with pytest.raises(TokenDecryptionError):
        decrypt_token(stored)


def test_malformed_key_is_a_configuration_error():
    with pytest.raises(TokenKeyError):
        encrypt_token("EAAB-token", "not-a-key")
