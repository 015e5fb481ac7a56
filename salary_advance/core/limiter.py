from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from salary_advance.core.settings import settings


def client_key(request: Request) -> str:
    """Bucket by tenant and client address so one tenant cannot starve another."""
    tenant = request.headers.get("x-tenant-id") or "-"
    return f"{tenant}:{get_remote_address(request)}"


def loan_apply_limit() -> str:
    return settings.loan_apply_rate_limit


limiter = Limiter(
    key_func=client_key,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    storage_uri=settings.redis_url,
    headers_enabled=False,
)
