import base64

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from salary_advance.core import crypto
from salary_advance.models.types import EncryptedString


def test_encrypted_string_round_trip() -> None:
    column = EncryptedString()
    stored = column.process_bind_param("consumer-secret", None)
    assert stored is not None
    assert b"consumer-secret" not in stored
    assert column.process_result_value(stored, None) == "consumer-secret"


def test_encrypted_string_passes_null_through() -> None:
    column = EncryptedString()
    assert column.process_bind_param(None, None) is None
    assert column.process_result_value(None, None) is None


def test_decrypt_with_wrong_key_is_rejected() -> None:
    token = crypto.encrypt_secret("initiator-password", secret="key-one")
    with pytest.raises(ValueError):
        crypto.decrypt_secret(token, secret="key-two")


def test_security_credential_encrypted_with_gateway_key(tmp_path) -> None:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    cert_path = tmp_path / "gateway.pem"
    cert_path.write_bytes(pem)

    credential = crypto.encrypt_security_credential("Safaricom999!", certificate_path=str(cert_path))

    plain = key.decrypt(base64.b64decode(credential), padding.PKCS1v15())
    assert plain == b"Safaricom999!"


def test_security_credential_untouched_without_certificate(monkeypatch) -> None:
    monkeypatch.setattr(crypto.settings, "mpesa_certificate_path", None)
    assert crypto.encrypt_security_credential("pre-encrypted") == "pre-encrypted"
