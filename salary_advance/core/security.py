"""Verification of bearer tokens minted by the upstream identity service.

This service never issues tokens; it only holds the RS256 public key.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from salary_advance.core.settings import settings


class JWTKeyError(RuntimeError):
    pass


@lru_cache(maxsize=1)
def _load_public_key() -> str:
    inline, path = settings.jwt_public_key, settings.jwt_public_key_path
    if inline:
        return inline
    if path:
        return Path(path).read_text(encoding="utf-8")
    raise JWTKeyError("Neither JWT_PUBLIC_KEY nor JWT_PUBLIC_KEY_PATH is set")


def decode_token(token: str, expected_type: str | None = "access") -> dict[str, Any]:
    try:
        claims = jwt.decode(token, _load_public_key(), algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise ValueError("Token expired") from exc
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    token_type = claims.get("type", expected_type)
    if expected_type is not None and token_type != expected_type:
        raise ValueError(f"Unexpected token type: {token_type}")
    return claims
