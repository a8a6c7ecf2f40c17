"""Tests for token encryption and settings validation."""

import pytest
from cryptography.fernet import Fernet

from adpulse.deps import load_settings
from adpulse.security import TokenCipher


def test_encrypt_decrypt_round_trip():
    cipher = TokenCipher(Fernet.generate_key().decode())

    ciphertext = cipher.encrypt_secret("secret-token", context="test")

    assert ciphertext != "secret-token"
    assert cipher.decrypt_secret(ciphertext, context="test") == "secret-token"


def test_decrypt_with_other_key_fails():
    ciphertext = TokenCipher(Fernet.generate_key().decode()).encrypt_secret("secret", context="test")

    with pytest.raises(ValueError):
        TokenCipher(Fernet.generate_key().decode()).decrypt_secret(ciphertext, context="test")


def test_empty_values_are_rejected():
    cipher = TokenCipher(Fernet.generate_key().decode())

    with pytest.raises(ValueError):
        cipher.encrypt_secret("", context="test")
    with pytest.raises(ValueError):
        cipher.decrypt_secret("", context="test")


def test_invalid_key_fails_fast():
    with pytest.raises(RuntimeError):
        TokenCipher("not-a-key")


def test_settings_validate_encryption_key():
    with pytest.raises(RuntimeError, match="TOKEN_ENCRYPTION_KEY"):
        load_settings(_env_file=None, DATABASE_URL="sqlite://", TOKEN_ENCRYPTION_KEY="short")


def test_settings_validate_sync_levels():
    key = Fernet.generate_key().decode()

    settings = load_settings(_env_file=None, DATABASE_URL="sqlite://", TOKEN_ENCRYPTION_KEY=key, SYNC_LEVELS="campaign, ad")
    assert settings.sync_levels == ["campaign", "ad"]

    with pytest.raises(RuntimeError):
        load_settings(_env_file=None, DATABASE_URL="sqlite://", TOKEN_ENCRYPTION_KEY=key, SYNC_LEVELS="keyword")


def test_settings_cors_origins():
    settings = load_settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        TOKEN_ENCRYPTION_KEY=Fernet.generate_key().decode(),
        BACKEND_CORS_ORIGINS="http://a.test, http://b.test",
    )

    assert settings.cors_origins == ["http://a.test", "http://b.test"]
