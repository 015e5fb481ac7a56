from __future__ import annotations

import hashlib
import logging

import httpx

from salary_advance.core.settings import settings
from salary_advance.services.mpesa_config import MpesaCredentials
from salary_advance.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3599


def _cache_key(credentials: MpesaCredentials) -> str:
    fingerprint = hashlib.sha256(
        f"{credentials.consumer_key}:{credentials.consumer_secret}".encode("utf-8")
    ).hexdigest()[:24]
    return f"mpesa:token:{credentials.tenant_id}:{fingerprint}"


async def _get_cached_token(key: str) -> str | None:
    try:
        redis = get_redis_client()
        return await redis.get(key)
    except Exception:
        logger.warning("Token cache read failed; fetching a fresh token", exc_info=True)
        return None


async def _set_cached_token(key: str, token: str, expires_in: int) -> None:
    ttl = expires_in - settings.mpesa_token_cache_margin_seconds
    if ttl <= 0:
        return
    try:
        redis = get_redis_client()
        await redis.setex(key, ttl, token)
    except Exception:
        logger.warning("Token cache write failed", exc_info=True)


async def fetch_access_token(
    client: httpx.AsyncClient, credentials: MpesaCredentials
) -> tuple[str, int]:
    response = await client.get(
        settings.mpesa_oauth_url,
        auth=(credentials.consumer_key, credentials.consumer_secret),
        timeout=settings.mpesa_oauth_timeout_seconds,
    )
    response.raise_for_status()
    data = response.json()
    token = data.get("access_token")
    if not token:
        raise ValueError("OAuth response did not include an access token")
    try:
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    return token, expires_in


async def get_access_token(
    credentials: MpesaCredentials, *, client: httpx.AsyncClient
) -> str | None:
    """Cached bearer token for one tenant credential pair, or ``None`` when the gateway refuses."""
    key = _cache_key(credentials)
    cached = await _get_cached_token(key)
    if cached:
        return cached
    try:
        token, expires_in = await fetch_access_token(client, credentials)
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("M-Pesa access token request failed for tenant=%s: %s", credentials.tenant_id, exc)
        return None
    await _set_cached_token(key, token, expires_in)
    return token
