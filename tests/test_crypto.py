"""Tests for credential encryption helpers."""

import pytest
from cryptography.fernet import Fernet

from mailsync.core.credentials import (
    GmailCredentials,
    ImapCredentials,
    credentials_from_dict,
    credentials_to_dict,
)
from mailsync.core.exceptions import AuthConfigurationError
from mailsync.utils.crypto import decrypt_object, encrypt_object


def test_credentials_survive_encryption():
    creds = ImapCredentials(host="imap.example.com", username="bob", password="pw", mailboxes=["*"])
    token = encrypt_object(credentials_to_dict(creds))

    assert "pw" not in token
    assert credentials_from_dict(decrypt_object(token)) == creds


def test_token_from_other_key_is_a_configuration_error(monkeypatch):
    token = encrypt_object({"type": "gmail"})
    monkeypatch.setenv("EMAIL_ENCRYPTION_KEY", Fernet.generate_key().decode())

    with pytest.raises(AuthConfigurationError):
        decrypt_object(token)


def test_missing_key_raises(monkeypatch):
    monkeypatch.delenv("EMAIL_ENCRYPTION_KEY")
    with pytest.raises(RuntimeError):
        encrypt_object({})


def test_unknown_or_incomplete_credentials_rejected():
    with pytest.raises(AuthConfigurationError):
        credentials_from_dict({"type": "exchange"})
    with pytest.raises(AuthConfigurationError):
        credentials_from_dict({"type": "gmail", "user_email": "a@example.com"})
    assert credentials_from_dict(
        {"type": "gmail", "refresh_token": "r", "user_email": "a@example.com", "extra": 1}
    ) == GmailCredentials(refresh_token="r", user_email="a@example.com")
