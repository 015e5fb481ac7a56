from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from fastapi.testclient import TestClient
from jose import jwt

from salary_advance.api import deps
from salary_advance.core import security
from salary_advance.core.roles import Role
from salary_advance.main import app

client = TestClient(app)


@pytest.fixture
def signing_key(monkeypatch):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    monkeypatch.setattr(security.settings, "jwt_public_key", public_pem)
    security._load_public_key.cache_clear()
    yield private_pem
    security._load_public_key.cache_clear()


def _token(private_pem: str, **claims) -> str:
    payload = {
        "sub": "30",
        "tenant_id": 1,
        "organization_id": 10,
        "employee_id": 20,
        "roles": ["EMPLOYEE"],
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    payload.update(claims)
    return jwt.encode(payload, private_pem, algorithm="RS256")


def test_caller_from_claims():
    caller = deps.caller_from_claims(
        {"sub": "31", "tenant_id": "1", "organization_id": None, "roles": "ADMIN"}
    )
    assert caller.user_id == 31
    assert caller.tenant_id == 1
    assert caller.organization_id is None
    assert Role.ADMIN in caller.roles


def test_claims_without_tenant_are_rejected():
    with pytest.raises(HTTPException) as excinfo:
        deps.caller_from_claims({"sub": "31", "roles": ["ADMIN"]})
    assert excinfo.value.status_code == 401


def test_bearer_token_authenticates_request(signing_key, fake_db):
    async def _get_db():
        return fake_db

    app.dependency_overrides[deps.get_db_session] = _get_db

    response = client.get(
        "/api/v1/loans/pending", headers={"Authorization": f"Bearer {_token(signing_key)}"}
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"items": [], "total": 0}


def test_refresh_token_is_not_accepted(signing_key, fake_db):
    async def _get_db():
        return fake_db

    app.dependency_overrides[deps.get_db_session] = _get_db

    response = client.get(
        "/api/v1/loans/pending",
        headers={"Authorization": f"Bearer {_token(signing_key, type='refresh')}"},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Unexpected token type: refresh"
