from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

from cryptography import x509
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from salary_advance.core.settings import settings


class CertificateError(RuntimeError):
    pass


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


@lru_cache(maxsize=16)
def get_fernet(secret: str | None = None) -> Fernet:
    return Fernet(_derive_key(secret or settings.secret_key))


def encrypt_secret(value: str, secret: str | None = None) -> bytes:
    return get_fernet(secret).encrypt(value.encode("utf-8"))


def decrypt_secret(token: bytes, secret: str | None = None) -> str:
    """Raise ``ValueError`` when the stored ciphertext was not written with this key."""
    try:
        return get_fernet(secret).decrypt(bytes(token)).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Stored credential cannot be decrypted with the configured key") from exc


def load_public_key(pem: bytes) -> RSAPublicKey:
    """Accept either an X.509 certificate or a bare public key in PEM form."""
    if b"BEGIN CERTIFICATE" in pem:
        key = x509.load_pem_x509_certificate(pem).public_key()
    else:
        key = load_pem_public_key(pem)
    if not isinstance(key, RSAPublicKey):
        raise CertificateError("Gateway certificate does not carry an RSA public key")
    return key


@lru_cache(maxsize=4)
def _certificate_key(path: str) -> RSAPublicKey:
    with open(path, "rb") as cert_file:
        return load_public_key(cert_file.read())


def encrypt_security_credential(plain: str, *, certificate_path: str | None = None) -> str:
    """Encrypt the initiator password with the gateway's public certificate.

    Returns the plain value untouched when no certificate is configured, in which
    case the stored credential is expected to be pre-encrypted.
    """
    path = certificate_path or settings.mpesa_certificate_path
    if not path:
        return plain
    key = _certificate_key(path)
    cipher = key.encrypt(plain.encode("utf-8"), padding.PKCS1v15())
    return base64.b64encode(cipher).decode("ascii")
