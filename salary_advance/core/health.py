"""Liveness and readiness probes.

Readiness pings Postgres and Redis concurrently; a dependency that errors or
does not answer within ``HEALTH_CHECK_TIMEOUT`` marks the service degraded
without failing the probe request itself.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from salary_advance.core.settings import settings
from salary_advance.db.session import Database
from salary_advance.utils.redis_client import get_redis_client

APP_VERSION = "0.1.0"
HEALTH_CHECK_TIMEOUT = 2.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _probe(check: Callable[[], Awaitable[Any]]) -> dict[str, str]:
    try:
        await asyncio.wait_for(check(), timeout=HEALTH_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        return {"status": "error", "error": f"no answer within {HEALTH_CHECK_TIMEOUT}s"}
    except Exception as exc:
        return {"status": "error", "error": str(exc)}
    return {"status": "ok"}


async def live_payload() -> dict[str, str]:
    return {"status": "ok", "timestamp": _now()}


async def ready_payload(database: Database) -> dict[str, Any]:
    db_check, redis_check = await asyncio.gather(
        _probe(database.ping),
        _probe(lambda: get_redis_client().ping()),
    )
    checks = {"database": db_check, "redis": redis_check}
    ready = all(check["status"] == "ok" for check in checks.values())
    return {
        "status": "ok" if ready else "degraded",
        "ready": ready,
        "environment": settings.environment,
        "version": APP_VERSION,
        "timestamp": _now(),
        "checks": checks,
    }
