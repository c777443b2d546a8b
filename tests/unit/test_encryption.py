"""
Test encryption service functionality.
"""

import pytest

from nudge.config import settings
from nudge.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
    generate_encryption_key,
    validate_encryption_config,
)


def test_basic_encryption_decryption():
    """Encrypted token differs from the input and decrypts back."""
    encrypted = encrypt_token("ya29.fake_access_token")

    assert encrypted != "ya29.fake_access_token"
    assert decrypt_token(encrypted) == "ya29.fake_access_token"


def test_encryption_config_validation():
    assert validate_encryption_config() is True


def test_unicode_and_long_tokens():
    for token in ["token_with_special_chars_!@#$%^&*()", "long_" + "x" * 500, "jeton_é_ü"]:
        assert decrypt_token(encrypt_token(token)) == token


def test_empty_token_rejected():
    with pytest.raises(EncryptionError):
        encrypt_token("")


def test_tampered_token_rejected():
    encrypted = encrypt_token("ya29.fake_access_token")

    with pytest.raises(EncryptionError):
        decrypt_token(encrypted[:-4] + "AAAA")


def test_missing_key_is_reported(monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", None)

    with pytest.raises(EncryptionError, match="not configured"):
        encrypt_token("ya29.fake_access_token")
    assert validate_encryption_config() is False


def test_generated_key_is_usable(monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", generate_encryption_key())

    assert decrypt_token(encrypt_token("abc")) == "abc"
