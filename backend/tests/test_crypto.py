import base64

import pytest

from socialsync.errors import ConfigurationError, DecryptionError
from socialsync.services.crypto import decrypt_token, encrypt_token, ensure_secret_configured


def test_encrypt_then_decrypt_returns_plaintext():
    blob = encrypt_token("EAAB-page-token")
    assert blob != "EAAB-page-token"
    assert decrypt_token(blob) == "EAAB-page-token"


def test_each_encryption_uses_a_fresh_iv():
    assert encrypt_token("same") != encrypt_token("same")


def test_wrong_secret_fails_authentication():
    blob = encrypt_token("token", secret="one")
    with pytest.raises(DecryptionError):
        decrypt_token(blob, secret="two")


def test_tampered_ciphertext_is_rejected():
    raw = bytearray(base64.b64decode(encrypt_token("token")))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt_token(base64.b64encode(bytes(raw)).decode())


@pytest.mark.parametrize("blob", ["not base64 !!", base64.b64encode(b"short").decode()])
def test_malformed_blob_raises_decryption_error(blob):
    with pytest.raises(DecryptionError):
        decrypt_token(blob)


def test_empty_secret_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        encrypt_token("token", secret="")
    with pytest.raises(ConfigurationError):
        ensure_secret_configured("")


def test_missing_env_secret_is_a_configuration_error(monkeypatch):
    from socialsync.settings import get_settings

    monkeypatch.setenv("ENCRYPTION_SECRET", "")
    get_settings.cache_clear()
    with pytest.raises(ConfigurationError):
        ensure_secret_configured()
